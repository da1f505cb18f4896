"""MCP stdio front end for the ai-browser tools."""
