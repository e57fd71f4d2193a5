"""Reverse index from dependency tags to the cache keys that declared them."""

from collections.abc import Iterable


class DependencyGraph:
    """Tracks which cache keys depend on which tags.

    A key is listed under a tag iff the key's current entry declared that tag.
    Removing a key removes it from every tag and prunes tags left empty.
    """

    def __init__(self):
        self._keys_by_tag: dict[str, set[str]] = {}
        self._tags_by_key: dict[str, set[str]] = {}

    def register(self, key: str, tags: Iterable[str]) -> None:
        """Add ``key`` under each of ``tags``."""
        tags = set(tags)
        if not tags:
            return

        self._tags_by_key.setdefault(key, set()).update(tags)
        for tag in tags:
            self._keys_by_tag.setdefault(tag, set()).add(key)

    def remove_key(self, key: str) -> None:
        """Drop ``key`` from every tag it was registered under."""
        for tag in self._tags_by_key.pop(key, set()):
            keys = self._keys_by_tag.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._keys_by_tag[tag]

    def pop_tag(self, tag: str) -> set[str]:
        """Remove the tag record and return the keys that were under it."""
        keys = self._keys_by_tag.pop(tag, set())
        for key in keys:
            key_tags = self._tags_by_key.get(key)
            if key_tags is None:
                continue
            key_tags.discard(tag)
            if not key_tags:
                del self._tags_by_key[key]
        return keys

    def keys_for(self, tag: str) -> set[str]:
        return set(self._keys_by_tag.get(tag, set()))

    def tags_for(self, key: str) -> set[str]:
        return set(self._tags_by_key.get(key, set()))

    def clear(self) -> None:
        self._keys_by_tag.clear()
        self._tags_by_key.clear()

    def __contains__(self, tag: str) -> bool:
        return tag in self._keys_by_tag

    def __len__(self) -> int:
        return len(self._keys_by_tag)
