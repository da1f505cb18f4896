"""Bounded per-view telemetry storage that keeps whole navigations together."""

import itertools
from collections import deque
from collections.abc import Callable
from typing import Generic, Protocol, TypeVar


class _Record(Protocol):
	id: int


T = TypeVar('T', bound=_Record)

# record ids are unique across every buffer in the process
_record_ids = itertools.count(1)


def next_record_id() -> int:
	return next(_record_ids)


class NavigationBuffer(Generic[T]):
	"""Records grouped by navigation, per view.

	Each view keeps its current navigation plus at most ``preserved_navigations``
	prior ones. Starting a navigation past that limit evicts the oldest navigation
	as a whole. Point lookups by record id are O(1) and see every retained record
	of every view.
	"""

	def __init__(self, preserved_navigations: int = 3):
		assert preserved_navigations >= 0
		self.preserved_navigations = preserved_navigations
		self._navigations: dict[str, deque[list[T]]] = {}
		self._index: dict[int, T] = {}

	def _view_navigations(self, view_id: str) -> deque[list[T]]:
		navigations = self._navigations.get(view_id)
		if navigations is None:
			navigations = deque([[]])
			self._navigations[view_id] = navigations
		return navigations

	def add(self, view_id: str, record: T) -> T:
		self._view_navigations(view_id)[-1].append(record)
		self._index[record.id] = record
		return record

	def start_navigation(self, view_id: str, carry_over: Callable[[T], bool] | None = None) -> None:
		"""Open a new navigation for the view, evicting the oldest one if over the limit.

		Records of the current navigation matching ``carry_over`` move into the new one,
		e.g. the document request that caused the navigation.
		"""
		navigations = self._view_navigations(view_id)
		carried: list[T] = []
		if carry_over is not None and navigations[-1]:
			current = navigations[-1]
			carried = [record for record in current if carry_over(record)]
			if carried:
				navigations[-1] = [record for record in current if not carry_over(record)]

		navigations.append(carried)
		while len(navigations) > self.preserved_navigations + 1:
			for record in navigations.popleft():
				self._index.pop(record.id, None)

	def get(self, record_id: int) -> T | None:
		return self._index.get(record_id)

	def records(self, view_id: str, include_preserved: bool = False) -> list[T]:
		navigations = self._navigations.get(view_id)
		if not navigations:
			return []
		if not include_preserved:
			return list(navigations[-1])
		return [record for navigation in navigations for record in navigation]

	def navigation_count(self, view_id: str) -> int:
		return len(self._navigations.get(view_id, ()))

	def drop_view(self, view_id: str) -> None:
		for navigation in self._navigations.pop(view_id, ()):
			for record in navigation:
				self._index.pop(record.id, None)

	def clear(self) -> None:
		self._navigations.clear()
		self._index.clear()

	def __len__(self) -> int:
		return len(self._index)
