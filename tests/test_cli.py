"""
CLI tests.

Each command runs through ``main`` against a state file in a temporary
directory, so consecutive invocations exercise snapshot persistence.
"""

import json
import sys

import pytest

from bpro.cli import CLIError, OutputFormat, _parse_payment, format_output, main

from conftest import txid


@pytest.fixture
def cli(tmp_path, monkeypatch, capsys):
    """Run ``bpro --state <tmp>/state.json ...`` and return (exit code, parsed stdout)."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("HOME", str(tmp_path))
    state = tmp_path / "state.json"

    def run(*argv):
        capsys.readouterr()
        code = main(["--state", str(state), *argv])
        captured = capsys.readouterr()
        # re-emit stderr so tests can still inspect it via capsys
        sys.stderr.write(captured.err)
        out = captured.out
        return code, (json.loads(out) if out.strip() else None)

    run.state = state
    return run


@pytest.fixture
def issued_cli(cli):
    """TKN issued with 1000 units on #1:0; returns (run, contract id, seal id)."""
    code, info = cli(
        "asset", "issue", "--ticker", "TKN", "--name", "Token",
        "--allocate", f"{txid(1)}:0=1000",
    )
    assert code == 0
    return cli, info["contract_id"], info["seals"][0]


# =============================================================================
# HELPERS
# =============================================================================

class TestHelpers:

    def test_parse_payment(self):
        assert _parse_payment(f"{txid(1)}:0=25") == (f"{txid(1)}:0", 25)

    def test_parse_payment_errors(self):
        with pytest.raises(CLIError):
            _parse_payment(f"{txid(1)}:0")
        with pytest.raises(CLIError):
            _parse_payment(f"{txid(1)}:0=lots")

    def test_table_format(self):
        table = format_output([{"ticker": "TKN", "precision": 8}], OutputFormat.TABLE)
        lines = table.splitlines()
        assert lines[0].split(" | ") == ["ticker", "precision"]
        assert lines[2].startswith("TKN")

    def test_yaml_format(self):
        assert format_output({"tip": 101}, OutputFormat.YAML).strip() == "tip: 101"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "usage: bpro" in capsys.readouterr().out


# =============================================================================
# ASSET COMMANDS
# =============================================================================

class TestAssetCommands:

    def test_issue_persists_state(self, issued_cli):
        run, cid, _ = issued_cli
        assert run.state.exists()
        code, assets = run("asset", "list")
        assert code == 0
        assert assets == [{
            "ticker": "TKN", "name": "Token",
            "contract_id": assets[0]["contract_id"], "precision": 8,
        }]
        assert assets[0]["contract_id"].startswith("rgb1")

    def test_show_accepts_bech32(self, issued_cli):
        run, cid, _ = issued_cli
        _, assets = run("asset", "list")
        code, info = run("asset", "show", assets[0]["contract_id"])
        assert code == 0
        assert info["contract_id"] == cid
        assert info["supply"]["circulating"] == 1000
        assert info["issuer_proof"] is None

    def test_transfer_with_change_then_mine(self, issued_cli):
        run, cid, _ = issued_cli
        code, result = run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=400")
        assert code == 0
        assert result["kind"] == "transfer"
        assert sorted(o["amount"] for o in result["outputs"]) == [400, 600]

        _, allocs = run("asset", "allocations", cid)
        assert {a["status"] for a in allocs} == {"open"}
        assert sum(a["amount"] for a in allocs) == 1000

        _, status = run("chain", "status")
        assert status["mempool"] == [result["witness_txid"]]

        code, mined = run("chain", "mine")
        assert code == 0
        assert mined == {"tip": 101}

        # change landed on the witness output, which the wallet now owns
        _, balance = run("wallet", "balance", cid)
        assert balance["balance"] == 600

    def test_transfer_to_own_outpoint(self, issued_cli):
        run, cid, _ = issued_cli
        run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000", "--own")
        _, balance = run("wallet", "balance", cid)
        assert balance["balance"] == 1000

    def test_insufficient_funds_is_retryable(self, issued_cli, capsys):
        run, cid, _ = issued_cli
        code, out = run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1001")
        assert code == 3
        assert out is None
        assert "Error [" in capsys.readouterr().err

    def test_double_spend_exit_code(self, issued_cli):
        run, cid, s0 = issued_cli
        assert run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000", "--input", s0)[0] == 0
        code, _ = run("asset", "transfer", cid, "--pay", f"{txid(3)}:0=1000", "--input", s0)
        assert code == 2

    def test_burn(self, issued_cli):
        run, cid, s0 = issued_cli
        code, result = run("asset", "burn", cid, "--seal", s0, "--amount", "100", "--reason", "redeemed")
        assert code == 0
        assert result["kind"] == "burn"
        _, supply = run("asset", "supply", cid)
        assert supply["burned"] == 100
        assert supply["circulating"] == 900

    def test_reissue(self, cli):
        _, info = cli(
            "asset", "issue", "--ticker", "TKN", "--name", "Token",
            "--allocate", f"{txid(1)}:0=1000",
            "--inflation", f"{txid(1)}:1=500",
            "--issue-limit", "1500",
        )
        cid, inflation_seal = info["contract_id"], info["seals"][1]
        code, _ = cli("asset", "reissue", cid, "--seal", inflation_seal, "--pay", f"{txid(4)}:0=200")
        assert code == 0
        _, supply = cli("asset", "supply", cid)
        assert supply["issued"] == 1200
        assert supply["inflation_remaining"] == 300

    def test_signed_issue(self, cli, tmp_path):
        key = tmp_path / "issuer.jwk.json"
        code, generated = cli("key", "generate", "--out", str(key), "--kid", "treasury")
        assert code == 0
        _, info = cli(
            "asset", "issue", "--ticker", "SIG", "--name", "Signed",
            "--allocate", f"{txid(1)}:0=10", "--issuer-key", str(key),
        )
        assert info["issuer"] == generated["did"]
        _, shown = cli("asset", "show", info["contract_id"])
        assert shown["issuer_proof"]["verificationMethod"] == f"{generated['did']}#treasury"

    def test_show_includes_genesis_bech32(self, issued_cli):
        run, cid, _ = issued_cli
        _, info = run("asset", "show", cid)
        assert info["genesis_bech32"].startswith("genesis1")

    def test_remove(self, issued_cli):
        run, cid, _ = issued_cli
        _, result = run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000")
        code, removed = run("asset", "remove", cid)
        assert code == 0
        assert removed == {"contract_id": cid, "ticker": "TKN", "status": "removed"}

        _, assets = run("asset", "list")
        assert assets == []
        assert run("asset", "show", cid)[0] == 2
        # its witness is no longer tracked either
        assert run("chain", "drop", result["witness_txid"])[0] == 1

    def test_remove_unknown(self, cli):
        code, _ = cli("asset", "remove", "ab" * 32)
        assert code == 2

    def test_unknown_contract(self, cli):
        code, _ = cli("asset", "show", "ab" * 32)
        assert code == 2

    def test_bad_bech32(self, cli):
        code, _ = cli("asset", "show", "rgb1qqqqqq")
        assert code == 1


# =============================================================================
# WALLET / CHAIN / KEY / CONFIG
# =============================================================================

class TestWalletCommands:

    def test_add_and_list(self, cli):
        code, added = cli("wallet", "add", f"{txid(9)}:2", "--value", "5000")
        assert code == 0
        assert added["status"] == "added"
        _, wallet = cli("wallet", "list")
        assert len(wallet) == 1
        assert wallet[0]["value"] == 5000

    def test_add_rejects_bad_outpoint(self, cli):
        code, _ = cli("wallet", "add", "not-an-outpoint")
        assert code == 1


class TestChainCommands:

    def test_drop_abandons_transition(self, issued_cli):
        run, cid, _ = issued_cli
        _, result = run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000")
        code, dropped = run("chain", "drop", result["witness_txid"])
        assert code == 0
        assert dropped["abandoned"] == result["transition_id"]

        _, balance = run("wallet", "balance", cid)
        assert balance["balance"] == 1000
        _, status = run("chain", "status")
        assert status["mempool"] == []

    def test_drop_confirmed_witness_refused(self, issued_cli):
        run, cid, _ = issued_cli
        _, result = run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000")
        run("chain", "mine")
        code, _ = run("chain", "drop", result["witness_txid"])
        assert code == 1

    def test_reorg_of_confirmed_spend_fails(self, issued_cli):
        run, cid, _ = issued_cli
        run("asset", "transfer", cid, "--pay", f"{txid(2)}:0=1000")
        run("chain", "mine")
        code, reorg = run("chain", "reorg")
        # the spent seal was confirmed at depth 1; disconnecting it is fatal
        assert code == 1
        assert reorg is None

    def test_drop_unknown_witness(self, cli):
        code, _ = cli("chain", "drop", txid(77))
        assert code == 1


class TestKeyCommands:

    def test_generate(self, cli, tmp_path):
        out = tmp_path / "keys" / "issuer.jwk.json"
        code, result = cli("key", "generate", "--out", str(out))
        assert code == 0
        assert result["did"].startswith("did:key:z")
        assert json.loads(out.read_text(encoding="utf-8"))["kid"] == "key-1"

    def test_refuses_overwrite(self, cli, tmp_path):
        out = tmp_path / "issuer.jwk.json"
        out.write_text("{}", encoding="utf-8")
        code, _ = cli("key", "generate", "--out", str(out))
        assert code == 1


class TestConfigCommands:

    def test_show(self, cli):
        code, config = cli("config", "show")
        assert code == 0
        assert config["seals"]["min_confirmations"] == 1

    def test_get(self, cli):
        code, result = cli("config", "get", "selector.exact_search_limit")
        assert code == 0
        assert result == {"path": "selector.exact_search_limit", "value": 16}

    def test_get_invalid_path(self, cli):
        code, _ = cli("config", "get", "nope.value")
        assert code == 1

    def test_config_file(self, cli, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text("seals:\n  min_confirmations: 6\n", encoding="utf-8")
        code, result = cli("--config", str(path), "config", "get", "seals.min_confirmations")
        assert code == 0
        assert result["value"] == 6

    def test_validate(self, cli, monkeypatch):
        monkeypatch.setenv("BPRO_SEAL_MIN_CONFIRMATIONS", "0")
        code, result = cli("config", "validate")
        assert code == 0
        assert result["valid"] is False
