import itertools
import logging
from typing import Any

from ai_browser.browser.session import CDPSession
from ai_browser.dom.views import ElementNode, Snapshot
from ai_browser.utils import time_execution_async

logger = logging.getLogger(__name__)

# roles that never carry meaning of their own, their children are hoisted in compact snapshots
HOISTED_ROLES = {'none', 'presentation', 'InlineTextBox', 'LineBreak'}

# generations are unique in the process so a uid can never resolve against another view's snapshot
_generations = itertools.count(1)


def next_generation() -> int:
	return next(_generations)


def _ax_value(ax_value: dict[str, Any] | None) -> Any:
	if not ax_value:
		return None
	return ax_value.get('value')


class AccessibilitySnapshotBuilder:
	"""Builds uid-addressed element trees from Accessibility.getFullAXTree.

	Compact snapshots keep the nodes an agent can reason about (named or
	semantic nodes), verbose snapshots keep every node the browser does not mark
	as ignored and carry all AX properties.
	"""

	def __init__(self, logger: logging.Logger | None = None):
		self.logger = logger or logging.getLogger(__name__)

	@time_execution_async('--build_snapshot')
	async def build(self, cdp_session: CDPSession, title: str, url: str, verbose: bool = False) -> Snapshot:
		ax_tree = await cdp_session.send('Accessibility.getFullAXTree')
		snapshot = self.build_from_ax_nodes(ax_tree.get('nodes', []), title=title, url=url, verbose=verbose)
		self.logger.debug(f'🌳 Built snapshot generation {snapshot.generation_id} with {len(snapshot)} nodes (verbose={verbose})')
		return snapshot

	def build_from_ax_nodes(self, ax_nodes: list[dict[str, Any]], title: str, url: str, verbose: bool = False) -> Snapshot:
		generation = next_generation()
		snapshot = Snapshot(title=title, url=url, generation_id=generation, root=None, verbose=verbose)
		if not ax_nodes:
			return snapshot

		nodes_by_id = {node['nodeId']: node for node in ax_nodes}
		root_ax_node = next((node for node in ax_nodes if not node.get('parentId')), ax_nodes[0])

		index = itertools.count()
		visited: set[str] = set()

		def make_element(ax_node: dict[str, Any]) -> ElementNode:
			element = self._build_element_node(ax_node, f'{generation}_{next(index)}')
			snapshot.id_to_node[element.uid] = element
			return element

		snapshot.root = make_element(root_ax_node)
		visited.add(root_ax_node['nodeId'])

		# iterative walk, real pages nest deeper than the default recursion limit
		stack: list[tuple[str, ElementNode]] = [
			(child_id, snapshot.root) for child_id in reversed(root_ax_node.get('childIds', []))
		]
		while stack:
			ax_node_id, parent = stack.pop()
			if ax_node_id in visited or ax_node_id not in nodes_by_id:
				continue
			visited.add(ax_node_id)
			ax_node = nodes_by_id[ax_node_id]

			if self._is_kept(ax_node, parent, verbose):
				element = make_element(ax_node)
				parent.children.append(element)
				next_parent = element
			else:
				next_parent = parent

			for child_id in reversed(ax_node.get('childIds', [])):
				stack.append((child_id, next_parent))

		return snapshot

	@staticmethod
	def _is_kept(ax_node: dict[str, Any], parent: ElementNode, verbose: bool) -> bool:
		if ax_node.get('ignored'):
			return False
		role = _ax_value(ax_node.get('role')) or ''
		name = _ax_value(ax_node.get('name')) or ''
		if verbose:
			return True
		if role in HOISTED_ROLES:
			return False
		if role == 'generic' and not name:
			return False
		# text that only repeats its parent's accessible name
		if role == 'StaticText' and (not name or name == parent.name):
			return False
		return True

	@staticmethod
	def _build_element_node(ax_node: dict[str, Any], uid: str) -> ElementNode:
		attributes: dict[str, Any] = {}
		for ax_property in ax_node.get('properties') or []:
			attributes[ax_property['name']] = _ax_value(ax_property.get('value'))
		if (value := _ax_value(ax_node.get('value'))) not in (None, ''):
			attributes['value'] = value
		if description := _ax_value(ax_node.get('description')):
			attributes['description'] = description

		return ElementNode(
			uid=uid,
			role=_ax_value(ax_node.get('role')) or '',
			name=str(_ax_value(ax_node.get('name')) or ''),
			backend_node_id=ax_node.get('backendDOMNodeId'),
			attributes=attributes,
		)
