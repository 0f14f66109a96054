"""bpro.issuer

Issuer identity for asset contracts.

Profile / invariants:
- issuers are `did:key` identifiers (Ed25519 only)
- a genesis proof is a detached raw Ed25519 signature, base64url encoded, over
  ``tagged_hash("issuer-proof", encode_genesis(genesis))``
- when ``genesis.issuer`` is a did:key, the proof's verification method must
  resolve to that same DID

The proof is detached so the contract id never depends on the signature.
"""

from __future__ import annotations

import base64
import json
import os
import pathlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from bpro.core import tagged_hash
from bpro.rgb.errors import IssuerProofInvalid
from bpro.rgb.types import Genesis

PROOF_TYPE = "BproEd25519GenesisProof2025"

# Base58 (bitcoin alphabet)
B58_ALPHABET = b"123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"
B58_MAP = {c: i for i, c in enumerate(B58_ALPHABET)}


def b58decode(s: str) -> bytes:
    s_bytes = s.encode("ascii") if isinstance(s, str) else s
    num = 0
    for c in s_bytes:
        if c not in B58_MAP:
            raise ValueError("Invalid base58 character")
        num = num * 58 + B58_MAP[c]
    n_pad = len(s_bytes) - len(s_bytes.lstrip(B58_ALPHABET[:1]))
    full = num.to_bytes((num.bit_length() + 7) // 8, "big") if num else b""
    return b"\x00" * n_pad + full


def b58encode(b: bytes) -> str:
    n_pad = len(b) - len(b.lstrip(b"\x00"))
    num = int.from_bytes(b, "big")
    out = bytearray()
    while num > 0:
        num, rem = divmod(num, 58)
        out.append(B58_ALPHABET[rem])
    out.extend(B58_ALPHABET[0] for _ in range(n_pad))
    out.reverse()
    return out.decode("ascii")


def b64url_encode(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).rstrip(b"=").decode("ascii")


def b64url_decode(s: str) -> bytes:
    pad = "=" * ((4 - len(s) % 4) % 4)
    return base64.urlsafe_b64decode((s + pad).encode("ascii"))


# ---------------------------------------------------------------------------
# did:key (Ed25519)
# ---------------------------------------------------------------------------

def did_key_from_public_key(pub: bytes) -> str:
    # multicodec 0xed01 + 32-byte pubkey (ed25519-pub)
    return "did:key:z" + b58encode(bytes([0xED, 0x01]) + pub)


def public_key_from_did_key(did: str) -> Ed25519PublicKey:
    """Parse a `did:key` (Ed25519) and return a cryptography public key."""
    if not did.startswith("did:key:z"):
        raise ValueError("Only did:key:z... supported")
    decoded = b58decode(did[len("did:key:z"):])
    if not decoded.startswith(bytes([0xED, 0x01])):
        raise ValueError("did:key multicodec prefix not recognized for Ed25519")
    raw = decoded[2:]
    if len(raw) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(raw)}")
    return Ed25519PublicKey.from_public_bytes(raw)


def base_did(did_or_vm: str) -> str:
    """Strip the fragment (did:key:z...#key-1 -> did:key:z...)."""
    return str(did_or_vm or "").split("#", 1)[0]


def public_key_bytes(key: Union[Ed25519PrivateKey, Ed25519PublicKey]) -> bytes:
    pub = key.public_key() if isinstance(key, Ed25519PrivateKey) else key
    return pub.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )


def now_rfc3339() -> str:
    """Timestamp for ``IssuerProof.created``; honours SOURCE_DATE_EPOCH."""
    sde = os.environ.get("SOURCE_DATE_EPOCH", "").strip()
    if sde:
        dt = datetime.fromtimestamp(int(sde, 10), tz=timezone.utc)
    else:
        dt = datetime.now(timezone.utc)
    return dt.replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# Genesis proofs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IssuerProof:
    verification_method: str
    signature: str
    created: str = ""
    type: str = PROOF_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "created": self.created,
            "verificationMethod": self.verification_method,
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "IssuerProof":
        return cls(
            verification_method=str(d.get("verificationMethod", "")),
            signature=str(d.get("signature", "")),
            created=str(d.get("created", "")),
            type=str(d.get("type", PROOF_TYPE)),
        )


def signing_input(genesis: Genesis) -> bytes:
    from bpro.rgb.encoding import encode_genesis
    return tagged_hash("issuer-proof", encode_genesis(genesis))


def sign_genesis(
    genesis: Genesis,
    private_key: Ed25519PrivateKey,
    verification_method: Optional[str] = None,
    created: Optional[str] = None,
) -> IssuerProof:
    """Produce a detached issuer proof for ``genesis``."""
    if verification_method is None:
        verification_method = did_key_from_public_key(public_key_bytes(private_key)) + "#key-1"
    return IssuerProof(
        verification_method=verification_method,
        signature=b64url_encode(private_key.sign(signing_input(genesis))),
        created=created or now_rfc3339(),
    )


def verify_genesis_proof(genesis: Genesis, proof: IssuerProof) -> None:
    """Raise ``IssuerProofInvalid`` unless ``proof`` is a valid issuer signature."""
    if proof.type != PROOF_TYPE:
        raise IssuerProofInvalid(f"unsupported proof type {proof.type!r}")
    did = base_did(proof.verification_method)
    if genesis.issuer.startswith("did:") and did != genesis.issuer:
        raise IssuerProofInvalid(
            f"proof signed by {did}, genesis names issuer {genesis.issuer}"
        )
    try:
        public_key = public_key_from_did_key(did)
        signature = b64url_decode(proof.signature)
    except ValueError as e:
        raise IssuerProofInvalid(f"malformed proof: {e}") from e
    try:
        public_key.verify(signature, signing_input(genesis))
    except InvalidSignature as e:
        raise IssuerProofInvalid("signature does not match genesis") from e


# ---------------------------------------------------------------------------
# Key material (OKP JWK)
# ---------------------------------------------------------------------------

def generate_ed25519_jwk(kid: str = "key-1") -> Dict[str, Any]:
    """Generate a new Ed25519 OKP JWK keypair."""
    priv = Ed25519PrivateKey.generate()
    priv_bytes = priv.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return {
        "kty": "OKP",
        "crv": "Ed25519",
        "x": b64url_encode(public_key_bytes(priv)),
        "d": b64url_encode(priv_bytes),
        "kid": kid,
    }


def load_ed25519_private_key_from_jwk(jwk: Mapping[str, Any]) -> Tuple[Ed25519PrivateKey, str]:
    """Return (private_key, did:key) for an OKP/Ed25519 private JWK."""
    if jwk.get("kty") != "OKP" or jwk.get("crv") != "Ed25519":
        raise ValueError("Only OKP/Ed25519 JWK is supported")
    d = jwk.get("d")
    if not d:
        raise ValueError("JWK must include 'd' (private)")
    priv = Ed25519PrivateKey.from_private_bytes(b64url_decode(d))
    return priv, did_key_from_public_key(public_key_bytes(priv))


def load_issuer_key(path: Union[str, pathlib.Path]) -> Tuple[Ed25519PrivateKey, str]:
    """Load an issuer key file; returns (private_key, verification_method)."""
    jwk = json.loads(pathlib.Path(path).read_text(encoding="utf-8"))
    if not isinstance(jwk, dict):
        raise ValueError("key file must be a JSON object")
    priv, did = load_ed25519_private_key_from_jwk(jwk)
    kid = str(jwk.get("kid") or "key-1").strip() or "key-1"
    return priv, f"{did}#{kid}"
