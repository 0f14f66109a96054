import os
import pathlib
import sys

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import bpro`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless BPRO_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items) -> None:
    run_slow = _env_flag('BPRO_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set BPRO_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    """Every test starts from default configuration and no BPRO_* overrides."""
    from bpro.config import get_config_manager

    for key in list(os.environ):
        if key.startswith("BPRO_"):
            monkeypatch.delenv(key, raising=False)
    get_config_manager().reset()
    yield
    get_config_manager().reset()


# =============================================================================
# SHARED BUILDERS
# =============================================================================

def txid(n: int) -> str:
    """Deterministic fake txid."""
    return f"{n:064x}"


def outpoint(n: int, vout: int = 0):
    from bpro.rgb.types import Outpoint
    return Outpoint(txid(n), vout)


def seal_at(n: int, vout: int = 0, blinding: int = 0):
    from bpro.rgb.types import SealDefinition
    return SealDefinition.at(outpoint(n, vout), blinding=blinding or (n * 1000 + vout + 1))


@pytest.fixture
def engine():
    from bpro.rgb.engine import AssetEngine
    eng = AssetEngine(audit_enabled=True)
    yield eng
    eng.close()


@pytest.fixture
def issued(engine):
    """An RGB20 asset with 1000 units on seal S0 at outpoint #1:0."""
    s0 = seal_at(1)
    cid = engine.issue(None, [(s0, 1000)], ticker="TKN", name="Token", created_at=1700000000)
    return engine, cid, s0
