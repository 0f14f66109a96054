#!/usr/bin/env python3
"""
bitcoin-pro CLI

Command-line access to the asset engine over a local state file. The state
file holds the engine snapshot, a simulated wallet (owned outpoints) and an
in-memory chain used to drive confirmations and reorgs.

Usage:
    bpro [--state FILE] <command> <subcommand> [options]

Commands:
    asset       Issue, inspect, transfer, burn and reissue assets
    wallet      Manage owned outpoints
    chain       Mine, reorganize or drop witness transactions (mock chain)
    key         Issuer key management
    config      Configuration management
"""

from __future__ import annotations

import argparse
import json
import pathlib
import sys
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from bpro import __version__
from bpro.core import load_json, write_canonical_json
from bpro.observability import Layer, get_logger

logger = get_logger("main", Layer.CLI)


class OutputFormat(Enum):
    """Output format options."""
    JSON = "json"
    YAML = "yaml"
    TABLE = "table"
    TEXT = "text"


class CLIError(Exception):
    """CLI error with exit code."""
    def __init__(self, message: str, exit_code: int = 1):
        super().__init__(message)
        self.exit_code = exit_code


def format_output(data: Any, fmt: OutputFormat = OutputFormat.JSON) -> str:
    """Format data for output."""
    if fmt == OutputFormat.JSON:
        return json.dumps(data, indent=2, default=str)
    elif fmt == OutputFormat.YAML:
        import yaml
        return yaml.dump(data, default_flow_style=False)
    elif fmt == OutputFormat.TABLE:
        return _format_table(data)
    else:
        return str(data)


def _format_table(data: Any) -> str:
    """Format data as ASCII table."""
    if isinstance(data, list) and data and isinstance(data[0], dict):
        headers = list(data[0].keys())
        rows = [[str(row.get(h, ""))[:40] for h in headers] for row in data]
        widths = [max(len(h), max(len(r[i]) for r in rows)) for i, h in enumerate(headers)]

        lines = []
        lines.append(" | ".join(h.ljust(widths[i]) for i, h in enumerate(headers)))
        lines.append("-+-".join("-" * w for w in widths))
        for row in rows:
            lines.append(" | ".join(c.ljust(widths[i]) for i, c in enumerate(row)))
        return "\n".join(lines)
    elif isinstance(data, dict):
        return "\n".join(f"{k}: {v}" for k, v in data.items())
    return str(data)


def _parse_payment(spec: str) -> Tuple[str, int]:
    """Parse ``txid:vout=amount``."""
    outpoint, sep, amount = spec.rpartition("=")
    if not sep:
        raise CLIError(f"payment must be OUTPOINT=AMOUNT: {spec!r}")
    try:
        return outpoint, int(amount)
    except ValueError:
        raise CLIError(f"invalid amount in {spec!r}") from None


# =============================================================================
# STATE FILE
# =============================================================================

class Workspace:
    """Engine, wallet and mock chain loaded from (and saved to) the state file."""

    def __init__(self, path: pathlib.Path):
        from bpro.rgb.chain import MockChain
        from bpro.rgb.engine import AssetEngine
        from bpro.rgb.types import OwnedUtxo

        self.path = path
        if path.exists():
            state = load_json(path)
            self.engine = AssetEngine.restore(state["engine"])
            self.chain = MockChain.from_dict(state.get("chain") or {})
            self.wallet = [OwnedUtxo.from_dict(u) for u in state.get("wallet", [])]
            self.witnesses: Dict[str, str] = dict(state.get("witnesses") or {})
        else:
            self.engine = AssetEngine()
            self.chain = MockChain()
            self.wallet = []
            self.witnesses = {}
        self.chain.subscribe(self.engine)

    def own(self, outpoint: Any) -> None:
        from bpro.rgb.types import OwnedUtxo
        if all(u.outpoint != outpoint for u in self.wallet):
            self.wallet.append(OwnedUtxo(outpoint=outpoint))

    def save(self) -> str:
        state = {
            "engine": self.engine.snapshot(),
            "chain": self.chain.to_dict(),
            "wallet": [u.to_dict() for u in sorted(self.wallet, key=lambda u: str(u.outpoint))],
            "witnesses": self.witnesses,
        }
        self.engine.close()
        return write_canonical_json(self.path, state)

    def publish(self, transition: Any, commitment: Any) -> Dict[str, Any]:
        """Broadcast a witness spending the transition's input outpoints and anchor it."""
        spends = []
        for seal in transition.inputs:
            outpoint = self.engine.registry.get(seal).outpoint
            if outpoint is not None:
                spends.append(outpoint)
        txid = self.chain.broadcast(spends, commitment=commitment.hex())
        bound = self.engine.anchor(transition.transition_id, txid)
        for seal in bound:
            self.own(self.engine.registry.get(seal).outpoint)
        self.witnesses[txid] = transition.transition_id
        return {
            "transition_id": transition.transition_id,
            "kind": transition.kind.value,
            "commitment": commitment.hex(),
            "script": commitment.script(self.engine.registry.get(transition.inputs[0]).definition.method).hex(),
            "witness_txid": txid,
            "outputs": [
                {"seal_id": a.seal_id, "amount": a.amount, "right": a.right.value}
                for a in transition.assignments
            ],
        }


# =============================================================================
# CLI
# =============================================================================

class BproCLI:
    """Main CLI application."""

    def __init__(self):
        self.parser = argparse.ArgumentParser(
            prog="bpro",
            description="bitcoin-pro asset engine CLI",
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        self.parser.add_argument(
            "--version", "-V",
            action="version",
            version=f"bpro {__version__}",
        )
        self.parser.add_argument(
            "--format", "-f",
            choices=["json", "yaml", "table", "text"],
            default="json",
            help="Output format (default: json)",
        )
        self.parser.add_argument(
            "--quiet", "-q",
            action="store_true",
            help="Suppress error output",
        )
        self.parser.add_argument("--state", "-s", help="State file (default: engine.state_file)")
        self.parser.add_argument("--config", "-c", help="YAML configuration file")

        self.subparsers = self.parser.add_subparsers(dest="command", help="Commands")
        self._register_commands()

    def _register_commands(self) -> None:
        self._register_asset_commands()
        self._register_wallet_commands()
        self._register_chain_commands()
        self._register_key_commands()
        self._register_config_commands()

    def _register_asset_commands(self) -> None:
        asset = self.subparsers.add_parser("asset", help="Asset operations")
        asset_sub = asset.add_subparsers(dest="subcommand")

        issue = asset_sub.add_parser("issue", help="Issue a new asset")
        issue.add_argument("--ticker", "-t", required=True, help="Ticker (A-Z, 0-9)")
        issue.add_argument("--name", "-n", required=True, help="Asset name")
        issue.add_argument("--description", "-d", default="", help="Description")
        issue.add_argument("--precision", "-p", type=int, default=8, help="Decimal precision")
        issue.add_argument("--allocate", "-a", action="append", required=True,
                           metavar="OUTPOINT=AMOUNT", help="Initial allocation (repeatable)")
        issue.add_argument("--inflation", "-i", action="append", default=[],
                           metavar="OUTPOINT=AMOUNT", help="Secondary issuance right (repeatable)")
        issue.add_argument("--issue-limit", type=int, help="Total issue limit")
        issue.add_argument("--issuer-key", help="Issuer JWK file; signs the genesis")

        asset_sub.add_parser("list", help="List known assets")

        show = asset_sub.add_parser("show", help="Show asset details and supply")
        show.add_argument("contract", help="Contract id (hex or rgb1...)")

        supply = asset_sub.add_parser("supply", help="Supply accounting")
        supply.add_argument("contract", help="Contract id")

        allocations = asset_sub.add_parser("allocations", help="Unspent allocations")
        allocations.add_argument("contract", help="Contract id")

        transfer = asset_sub.add_parser("transfer", help="Transfer asset")
        transfer.add_argument("contract", help="Contract id")
        transfer.add_argument("--pay", action="append", required=True,
                              metavar="OUTPOINT=AMOUNT", help="Recipient allocation (repeatable)")
        transfer.add_argument("--input", action="append", metavar="SEAL_ID",
                              help="Spend this seal (coin control, repeatable)")
        transfer.add_argument("--own", action="store_true", help="Recipient outpoints belong to this wallet")

        burn = asset_sub.add_parser("burn", help="Burn asset")
        burn.add_argument("contract", help="Contract id")
        burn.add_argument("--seal", action="append", required=True, metavar="SEAL_ID", help="Seal to burn")
        burn.add_argument("--amount", type=int, help="Amount to burn (default: everything)")
        burn.add_argument("--reason", default="", help="Reason recorded in the transition")

        reissue = asset_sub.add_parser("reissue", help="Secondary issuance")
        reissue.add_argument("contract", help="Contract id")
        reissue.add_argument("--seal", action="append", required=True, metavar="SEAL_ID",
                             help="Inflation seal to spend")
        reissue.add_argument("--pay", action="append", required=True, metavar="OUTPOINT=AMOUNT",
                             help="New allocation (repeatable)")

        remove = asset_sub.add_parser("remove", help="Stop tracking an asset")
        remove.add_argument("contract", help="Contract id")

    def _register_wallet_commands(self) -> None:
        wallet = self.subparsers.add_parser("wallet", help="Owned outpoints")
        wallet_sub = wallet.add_subparsers(dest="subcommand")

        add = wallet_sub.add_parser("add", help="Add an owned outpoint")
        add.add_argument("outpoint", help="txid:vout")
        add.add_argument("--value", type=int, default=0, help="Value in satoshi")

        wallet_sub.add_parser("list", help="List owned outpoints")

        balance = wallet_sub.add_parser("balance", help="Spendable asset balance")
        balance.add_argument("contract", help="Contract id")

    def _register_chain_commands(self) -> None:
        chain = self.subparsers.add_parser("chain", help="Mock chain control")
        chain_sub = chain.add_subparsers(dest="subcommand")

        mine = chain_sub.add_parser("mine", help="Mine blocks")
        mine.add_argument("--blocks", "-b", type=int, default=1)

        reorg = chain_sub.add_parser("reorg", help="Disconnect blocks")
        reorg.add_argument("--blocks", "-b", type=int, default=1)

        drop = chain_sub.add_parser("drop", help="Drop an unconfirmed witness and abandon its transition")
        drop.add_argument("txid", help="Witness txid")

        chain_sub.add_parser("status", help="Tip and mempool")

    def _register_key_commands(self) -> None:
        key = self.subparsers.add_parser("key", help="Issuer keys")
        key_sub = key.add_subparsers(dest="subcommand")

        generate = key_sub.add_parser("generate", help="Generate an Ed25519 issuer key")
        generate.add_argument("--out", "-o", required=True, help="Output JWK file")
        generate.add_argument("--kid", default="key-1", help="Key id")

    def _register_config_commands(self) -> None:
        config = self.subparsers.add_parser("config", help="Configuration management")
        config_sub = config.add_subparsers(dest="subcommand")

        get = config_sub.add_parser("get", help="Get a configuration value")
        get.add_argument("path", help="Dotted path, e.g. seals.min_confirmations")

        config_sub.add_parser("show", help="Show effective configuration")
        config_sub.add_parser("validate", help="Validate configuration")

    def run(self, args: Optional[List[str]] = None) -> int:
        """Run the CLI."""
        from bpro.rgb.errors import RgbError

        parsed = self.parser.parse_args(args)

        if not parsed.command:
            self.parser.print_help()
            return 0

        try:
            fmt = OutputFormat(parsed.format)
            self._load_config(parsed)
            result = self._dispatch(parsed)

            if result is not None:
                print(format_output(result, fmt))

            return 0

        except CLIError as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return e.exit_code

        except RgbError as e:
            logger.warning("Command failed", error_code=e.code, command=parsed.command)
            if not parsed.quiet:
                print(f"Error [{e.code}]: {e.message}", file=sys.stderr)
            return 3 if e.retryable else 2

        except Exception as e:
            if not parsed.quiet:
                print(f"Error: {e}", file=sys.stderr)
            return 1

    def _load_config(self, args: argparse.Namespace) -> None:
        from bpro.config import get_config_manager
        mgr = get_config_manager()
        if args.config:
            mgr.load_from_file(args.config)
        else:
            mgr.load_defaults()

    def _dispatch(self, args: argparse.Namespace) -> Any:
        """Dispatch command to handler."""
        cmd = args.command
        subcmd = getattr(args, "subcommand", None)

        handler_name = f"_handle_{cmd}_{subcmd}" if subcmd else f"_handle_{cmd}"
        handler = getattr(self, handler_name, None)

        if handler is None:
            raise CLIError(f"Unknown command: {cmd} {subcmd or ''}")

        return handler(args)

    # Helpers
    def _workspace(self, args: argparse.Namespace) -> Workspace:
        from bpro.config import get_config
        path = args.state or get_config().engine.state_file.get()
        return Workspace(pathlib.Path(path))

    @staticmethod
    def _contract_id(value: str) -> str:
        from bpro.bech32 import contract_id_from_bech32
        if value.startswith("rgb1"):
            try:
                return contract_id_from_bech32(value)
            except ValueError as e:
                raise CLIError(f"invalid contract id: {e}") from e
        return value.strip().lower()

    @staticmethod
    def _seal_at(outpoint: str) -> Any:
        from bpro.config import get_config
        from bpro.rgb.types import Outpoint, SealDefinition, SealMethod
        try:
            op = Outpoint.parse(outpoint)
        except ValueError as e:
            raise CLIError(str(e)) from e
        return SealDefinition.at(op, method=SealMethod(get_config().commitment.default_method.get()))

    # Asset handlers
    def _handle_asset_issue(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        allocations = [(self._seal_at(op), amount) for op, amount in map(_parse_payment, args.allocate)]
        inflation = [(self._seal_at(op), amount) for op, amount in map(_parse_payment, args.inflation)]

        signing_key = vm = None
        issuer = ""
        if args.issuer_key:
            from bpro.issuer import base_did, load_issuer_key
            signing_key, vm = load_issuer_key(args.issuer_key)
            issuer = base_did(vm)

        cid = ws.engine.issue(
            None,
            allocations,
            ticker=args.ticker,
            name=args.name,
            description=args.description,
            precision=args.precision,
            issue_limit=args.issue_limit,
            inflation=inflation,
            issuer=issuer,
            created_at=int(time.time()),
            signing_key=signing_key,
            verification_method=vm,
        )
        for seal, _ in allocations + inflation:
            ws.own(seal.outpoint)
        info = ws.engine.asset(cid).to_dict()
        info["seals"] = [seal.seal_id for seal, _ in allocations + inflation]
        ws.save()
        return info

    def _handle_asset_list(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        return [
            {"ticker": a.ticker, "name": a.name, "contract_id": a.bech32, "precision": a.precision}
            for a in ws.engine.assets()
        ]

    def _handle_asset_show(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        cid = self._contract_id(args.contract)
        info = ws.engine.asset(cid).to_dict()
        info["supply"] = ws.engine.supply(cid).to_dict()
        proof = ws.engine.proof(cid)
        info["issuer_proof"] = proof.to_dict() if proof is not None else None
        return info

    def _handle_asset_supply(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        return ws.engine.supply(self._contract_id(args.contract)).to_dict()

    def _handle_asset_allocations(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        out = []
        for a in ws.engine.allocations(self._contract_id(args.contract)):
            record = ws.engine.registry.get(a.seal_id)
            out.append({
                "seal_id": a.seal_id,
                "amount": a.amount,
                "right": a.right.value,
                "status": record.status.value,
                "outpoint": str(record.outpoint) if record.outpoint else "",
            })
        return out

    def _handle_asset_transfer(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        cid = self._contract_id(args.contract)
        targets = [(self._seal_at(op), amount) for op, amount in map(_parse_payment, args.pay)]
        transition, commitment = ws.engine.transfer(
            cid, targets, wallet=ws.wallet, inputs=args.input,
        )
        if args.own:
            for seal, _ in targets:
                ws.own(seal.outpoint)
        result = ws.publish(transition, commitment)
        ws.save()
        return result

    def _handle_asset_burn(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        transition, commitment = ws.engine.burn(
            self._contract_id(args.contract), args.seal, amount=args.amount, reason=args.reason,
        )
        result = ws.publish(transition, commitment)
        ws.save()
        return result

    def _handle_asset_reissue(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        allocations = [(self._seal_at(op), amount) for op, amount in map(_parse_payment, args.pay)]
        transition, commitment = ws.engine.issue_secondary(
            self._contract_id(args.contract), args.seal, allocations,
        )
        for seal, _ in allocations:
            ws.own(seal.outpoint)
        result = ws.publish(transition, commitment)
        ws.save()
        return result

    def _handle_asset_remove(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        cid = self._contract_id(args.contract)
        dropped = {t.transition_id for t in ws.engine.graph.transitions(cid, include_abandoned=True)}
        genesis = ws.engine.remove(cid)
        ws.witnesses = {txid: tid for txid, tid in ws.witnesses.items() if tid not in dropped}
        ws.save()
        return {"contract_id": cid, "ticker": genesis.ticker, "status": "removed"}

    # Wallet handlers
    def _handle_wallet_add(self, args: argparse.Namespace) -> Any:
        from bpro.rgb.types import Outpoint, OwnedUtxo
        ws = self._workspace(args)
        try:
            outpoint = Outpoint.parse(args.outpoint)
        except ValueError as e:
            raise CLIError(str(e)) from e
        ws.wallet = [u for u in ws.wallet if u.outpoint != outpoint]
        ws.wallet.append(OwnedUtxo(outpoint=outpoint, value=args.value))
        ws.save()
        return {"outpoint": str(outpoint), "value": args.value, "status": "added"}

    def _handle_wallet_list(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        return [u.to_dict() for u in ws.wallet]

    def _handle_wallet_balance(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        cid = self._contract_id(args.contract)
        return {"contract_id": cid, "balance": ws.engine.balance(cid, ws.wallet)}

    # Chain handlers
    def _handle_chain_mine(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        tip = ws.chain.mine(args.blocks)
        ws.save()
        return {"tip": tip}

    def _handle_chain_reorg(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        reverted = ws.chain.reorg(args.blocks)
        ws.save()
        return {"tip": ws.chain.tip, "reverted": reverted}

    def _handle_chain_drop(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        tid = ws.witnesses.get(args.txid)
        if tid is None:
            raise CLIError(f"unknown witness {args.txid}")
        if ws.chain.depth(args.txid) > 0:
            raise CLIError(f"witness {args.txid} is confirmed; reorg it first")
        ws.engine.abandon(tid)
        ws.chain.drop(args.txid)
        del ws.witnesses[args.txid]
        ws.save()
        return {"txid": args.txid, "abandoned": tid}

    def _handle_chain_status(self, args: argparse.Namespace) -> Any:
        ws = self._workspace(args)
        return {"tip": ws.chain.tip, "mempool": ws.chain.mempool()}

    # Key handlers
    def _handle_key_generate(self, args: argparse.Namespace) -> Any:
        from bpro.issuer import generate_ed25519_jwk, load_ed25519_private_key_from_jwk
        jwk = generate_ed25519_jwk(args.kid)
        out = pathlib.Path(args.out)
        if out.exists():
            raise CLIError(f"refusing to overwrite {out}")
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(json.dumps(jwk, indent=2) + "\n", encoding="utf-8")
        _, did = load_ed25519_private_key_from_jwk(jwk)
        return {"path": str(out), "did": did, "kid": args.kid}

    # Config handlers
    def _handle_config_get(self, args: argparse.Namespace) -> Any:
        from bpro.config import get_config_manager
        mgr = get_config_manager()
        try:
            return {"path": args.path, "value": mgr.get(args.path)}
        except AttributeError:
            raise CLIError(f"Invalid config path: {args.path}") from None

    def _handle_config_show(self, args: argparse.Namespace) -> Any:
        from bpro.config import get_config_manager
        return get_config_manager().config.to_dict()

    def _handle_config_validate(self, args: argparse.Namespace) -> Any:
        from bpro.config import get_config_manager
        errors = get_config_manager().validate()
        return {"valid": len(errors) == 0, "errors": errors}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    cli = BproCLI()
    return cli.run(argv)


if __name__ == "__main__":
    sys.exit(main())
