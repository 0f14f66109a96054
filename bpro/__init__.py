"""
bitcoin-pro: client-side-validated fungible assets on Bitcoin.

Package Layout
──────────────

    bpro/core.py            Hashing, tagged hashes, canonical JSON, YAML/JSON IO
    bpro/config.py          Layered configuration (YAML files + BPRO_* env vars)
    bpro/observability.py   Structured JSON logging and hash-chained audit trail
    bpro/issuer.py          did:key issuer identity and Ed25519 genesis proofs
    bpro/bech32.py          rgb1... rendering of contract ids
    bpro/cli.py             The ``bpro`` command
    bpro/rgb/               Asset contract state engine (see bpro.rgb)
"""

__version__ = "0.3.0"
