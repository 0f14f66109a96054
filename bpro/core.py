"""Core primitives for the bitcoin-pro asset engine.

This module provides the foundational utilities used throughout the package:
- Cryptographic hashing (SHA-256, BIP-340 style tagged hashes)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
"""

from __future__ import annotations

import hashlib
import json
import pathlib
import re
from typing import Any, Dict

import yaml

# Every tagged hash in the protocol is namespaced under this prefix.
TAG_PREFIX = "urn:bpro:rgb:"

_SHA256_HEX_RE = re.compile(r"[a-f0-9]{64}")
_TAG_CACHE: Dict[str, bytes] = {}


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def sha256_digest(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def tagged_hash(tag: str, msg: bytes) -> bytes:
    """Compute SHA256(SHA256(tag) || SHA256(tag) || msg).

    Tags are namespaced with ``TAG_PREFIX`` so that digests from different
    protocol objects (genesis, transition, seal, bundle) can never collide.
    """
    midstate = _TAG_CACHE.get(tag)
    if midstate is None:
        h = hashlib.sha256((TAG_PREFIX + tag).encode("utf-8")).digest()
        midstate = h + h
        _TAG_CACHE[tag] = midstate
    return hashlib.sha256(midstate + msg).digest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def load_document(path: pathlib.Path) -> Any:
    """Load a YAML or JSON document, dispatching on the file suffix."""
    p = pathlib.Path(path)
    if p.suffix.lower() in (".yaml", ".yml"):
        return load_yaml(p)
    return load_json(p)


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    This ensures byte-for-byte reproducibility for content addressing.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, (list, tuple)):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def write_canonical_json(path: pathlib.Path, obj: Any) -> str:
    """Write canonical JSON to file, returning the digest.

    Appends a trailing newline for POSIX compatibility.
    Returns the SHA-256 digest of the canonical bytes (without newline).
    """
    canonical = canonical_json_bytes(obj)
    p = pathlib.Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(canonical + b"\n")
    return sha256_bytes(canonical)


def is_valid_sha256(digest: str) -> bool:
    """Check if string is a valid SHA-256 hex digest."""
    return bool(_SHA256_HEX_RE.fullmatch(digest or ""))


def normalize_hex32(value: Any, field: str = "digest") -> str:
    """Normalize a 32-byte hex identifier or raise ValueError."""
    s = str(value or "").strip().lower()
    if not is_valid_sha256(s):
        raise ValueError(f"{field} must be 64 lowercase hex chars: {value!r}")
    return s
