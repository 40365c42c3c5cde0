"""BIP32 derivation paths and bounded account ranges."""

from __future__ import annotations

from dataclasses import dataclass

from hwsigner.errors import InvalidPathRange

HARDENED_OFFSET = 0x80000000


def parse_path(path: str) -> list[int]:
    """Parse ``m/44'/60'/0'/0`` into child indices (hardened bit applied)."""
    if not path.startswith("m/"):
        raise InvalidPathRange(f"Derivation path must start with m/: {path!r}")
    indices: list[int] = []
    for element in path[2:].split("/"):
        hardened = element.endswith("'") or element.endswith("h")
        digits = element[:-1] if hardened else element
        if not digits.isdigit():
            raise InvalidPathRange(f"Invalid path element {element!r} in {path!r}")
        index = int(digits)
        if index >= HARDENED_OFFSET:
            raise InvalidPathRange(f"Path index out of range in {path!r}")
        indices.append(index | HARDENED_OFFSET if hardened else index)
    return indices


@dataclass(frozen=True)
class PathRange:
    """A bounded page of accounts: ``base_path/start`` .. ``base_path/start+count-1``."""

    base_path: str
    start: int = 0
    count: int = 5

    def paths(self) -> list[str]:
        return [f"{self.base_path}/{i}" for i in range(self.start, self.start + self.count)]

    def validate(self, max_page_size: int) -> None:
        if self.start < 0:
            raise InvalidPathRange(f"Range start must be >= 0, got {self.start}")
        if not 1 <= self.count <= max_page_size:
            raise InvalidPathRange(
                f"Range count must be between 1 and {max_page_size}, got {self.count}"
            )
        if self.start + self.count > HARDENED_OFFSET:
            raise InvalidPathRange("Range exceeds the non-hardened index space")
        parse_path(self.base_path)
