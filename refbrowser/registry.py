"""Reference registry: one snapshot generation's ref → descriptor bindings."""

from collections.abc import Iterator, Mapping
from types import MappingProxyType

from refbrowser.views import RefDescriptor


class ReferenceRegistry(Mapping[str, RefDescriptor]):
    """Read-only ref bindings for a single snapshot generation.

    A registry is never edited after construction; the Page swaps in a new one.
    Whether it is still current is decided by comparing its stamps with the
    owning Page's counters: ``generation`` moves on every snapshot,
    ``navigation_epoch`` on every navigation.
    """

    def __init__(
        self,
        page_id: str,
        generation: int,
        navigation_epoch: int,
        entries: Mapping[str, RefDescriptor],
    ):
        self.page_id = page_id
        self.generation = generation
        self.navigation_epoch = navigation_epoch
        self._entries = MappingProxyType(dict(entries))

    def __getitem__(self, ref: str) -> RefDescriptor:
        return self._entries[ref]

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return (
            f"<ReferenceRegistry page={self.page_id[-8:]} gen={self.generation} "
            f"nav={self.navigation_epoch} refs={len(self)}>"
        )
