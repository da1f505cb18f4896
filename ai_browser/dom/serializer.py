import json
from typing import Any

from ai_browser.dom.views import VERBOSE_ATTRIBUTE_ORDER, ElementNode, Snapshot


def _format_value(value: Any) -> str:
	return json.dumps(value if isinstance(value, str) else str(value), ensure_ascii=False)


def _format_attributes(attributes: dict[str, Any]) -> list[str]:
	parts = []
	ordered = [key for key in VERBOSE_ATTRIBUTE_ORDER if key in attributes]
	ordered += sorted(key for key in attributes if key not in VERBOSE_ATTRIBUTE_ORDER)
	for key in ordered:
		value = attributes[key]
		if value is None or value == '':
			continue
		if value is True:
			parts.append(key)
		elif value is False:
			# only checked/pressed/selected/expanded carry meaning when false
			if key in ('checked', 'pressed', 'selected', 'expanded'):
				parts.append(f'{key}="false"')
		else:
			parts.append(f'{key}={_format_value(value)}')
	return parts


def format_node_line(node: ElementNode, verbose: bool) -> str:
	parts = [f'uid={node.uid}', node.role or 'unknown']
	if node.name:
		parts.append(json.dumps(node.name, ensure_ascii=False))
	if verbose:
		parts.extend(_format_attributes(node.attributes))
	return ' '.join(parts)


def serialize_snapshot(snapshot: Snapshot, verbose: bool = False) -> str:
	"""Render a snapshot as an indented tree, one node per line.

	compact:  uid=3_4 button "Submit"
	verbose:  uid=3_4 button "Submit" focusable disabled
	"""
	if snapshot.root is None:
		return ''
	lines: list[str] = []
	stack: list[tuple[ElementNode, int]] = [(snapshot.root, 0)]
	while stack:
		node, depth = stack.pop()
		lines.append('  ' * depth + format_node_line(node, verbose))
		for child in reversed(node.children):
			stack.append((child, depth + 1))
	return '\n'.join(lines)
