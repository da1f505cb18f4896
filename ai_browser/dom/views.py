from dataclasses import dataclass, field
from typing import Any

# AX properties worth printing in verbose snapshots, in this order
VERBOSE_ATTRIBUTE_ORDER = [
	'value',
	'description',
	'focusable',
	'focused',
	'editable',
	'readonly',
	'disabled',
	'required',
	'invalid',
	'checked',
	'pressed',
	'selected',
	'expanded',
	'level',
	'multiselectable',
	'multiline',
	'autocomplete',
	'haspopup',
	'valuemin',
	'valuemax',
	'valuetext',
	'url',
	'keyshortcuts',
	'roledescription',
]


@dataclass(slots=True)
class ElementNode:
	"""One accessibility node of a snapshot, addressable by its uid until the next snapshot."""

	uid: str
	role: str
	name: str
	backend_node_id: int | None
	attributes: dict[str, Any] = field(default_factory=dict)
	children: list['ElementNode'] = field(default_factory=list)

	def has_child_with_role(self, role: str) -> bool:
		"""Whether any descendant has the given role, e.g. a combobox owning option nodes."""
		stack = list(self.children)
		while stack:
			node = stack.pop()
			if node.role == role:
				return True
			stack.extend(node.children)
		return False


@dataclass
class Snapshot:
	"""A captured accessibility tree of one view.

	generation_id is the prefix of every uid in id_to_node; uids of any other
	generation are stale.
	"""

	title: str
	url: str
	generation_id: int
	root: ElementNode | None
	id_to_node: dict[str, ElementNode] = field(default_factory=dict)
	view_id: str | None = None
	verbose: bool = False

	def format(self, verbose: bool | None = None) -> str:
		from ai_browser.dom.serializer import serialize_snapshot

		return serialize_snapshot(self, self.verbose if verbose is None else verbose)

	def __len__(self) -> int:
		return len(self.id_to_node)
