"""
Content Hashing
Incremental SHA-256 digests used to address stored archives by content
"""

import hashlib
from pathlib import Path
from typing import Iterable, Union


HASH_ALGORITHM = "sha256"

# Read size for hashing files already on disk
FILE_READ_SIZE = 1024 * 1024


class ContentHasher:
    """
    Folds byte chunks into a single digest, one chunk at a time.

    The result depends only on the concatenation of the chunks,
    never on where the chunk boundaries fall.
    """

    def __init__(self):
        self._digest = hashlib.new(HASH_ALGORITHM)
        self.bytes_hashed = 0

    def update(self, chunk: bytes) -> None:
        self._digest.update(chunk)
        self.bytes_hashed += len(chunk)

    def hexdigest(self) -> str:
        """Lowercase hex digest of everything fed so far"""
        return self._digest.hexdigest()


def hash_chunks(chunks: Iterable[bytes]) -> str:
    hasher = ContentHasher()
    for chunk in chunks:
        hasher.update(chunk)
    return hasher.hexdigest()


def hash_file(path: Union[str, Path]) -> str:
    """Hash a file from disk without loading it whole"""
    hasher = ContentHasher()
    with open(path, 'rb') as f:
        while True:
            block = f.read(FILE_READ_SIZE)
            if not block:
                break
            hasher.update(block)
    return hasher.hexdigest()


def is_content_hash(value: str) -> bool:
    """True if value looks like a hex digest produced by ContentHasher"""
    expected = hashlib.new(HASH_ALGORITHM).digest_size * 2
    if len(value) != expected:
        return False
    return all(c in "0123456789abcdef" for c in value)
