"""
Content Hasher.

Computes stable hashes of origin and target objects so the reconciler can
tell whether anything changed since the last recorded contract:
- Recursive key ordering (key order never changes a hash)
- Canonical JSON encoding
- md5 or sha256 digests
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping


class ContentHasher:
    """
    Stable content hashing for change detection.

    Two objects hash equal when they hold the same data, whatever the
    order of their keys.

    Example:
        hasher = ContentHasher("md5")

        origin_hash = hasher.hash({"id": "o1", "name": "Alice"})
        assert origin_hash == hasher.hash({"name": "Alice", "id": "o1"})
    """

    def __init__(self, algorithm: str = "md5") -> None:
        """
        Initialize content hasher.

        Args:
            algorithm: Hash algorithm ("md5" or "sha256")
        """
        algorithm = getattr(algorithm, "value", algorithm)
        if algorithm not in ("md5", "sha256"):
            raise ValueError(f"Unsupported algorithm: {algorithm}")
        self.algorithm = algorithm

    def _get_hasher(self) -> "hashlib._Hash":
        """Get a new hash object."""
        if self.algorithm == "sha256":
            return hashlib.sha256()
        return hashlib.md5()

    def normalize(self, value: Any) -> Any:
        """
        Convert a value into a canonical, JSON-encodable form.

        Mappings are rebuilt with sorted keys, tuples and sets become lists
        (sets sorted by their canonical encoding), datetimes become ISO
        strings and bytes become hex.
        """
        if isinstance(value, Mapping):
            return {str(key): self.normalize(value[key]) for key in sorted(value, key=str)}
        if isinstance(value, (list, tuple)):
            return [self.normalize(item) for item in value]
        if isinstance(value, (set, frozenset)):
            items = [self.normalize(item) for item in value]
            return sorted(items, key=self.canonical)
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, bytes):
            return value.hex()
        if isinstance(value, Enum):
            return value.value
        return value

    def canonical(self, value: Any) -> str:
        """Canonical JSON text of a value."""
        return json.dumps(
            self.normalize(value),
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        )

    def hash(self, value: Any) -> str:
        """
        Calculate the content hash of an object.

        Args:
            value: Any JSON-like value (typically a record dict)

        Returns:
            Hex digest of the canonical encoding
        """
        hasher = self._get_hasher()
        hasher.update(self.canonical(value).encode("utf-8"))
        return hasher.hexdigest()

    def compare(self, left: str | None, right: str | None) -> bool:
        """Compare two hashes for equality. A missing hash never matches."""
        if left is None or right is None:
            return False
        return left.lower() == right.lower()
