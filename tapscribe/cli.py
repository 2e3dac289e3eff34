"""Command line interface for tapscribe."""

from __future__ import annotations

import argparse
import json
import logging
import mimetypes
import sys
from pathlib import Path
from typing import Sequence

from .config import ConfigurationError, TapscribeConfig, load_config, set_default_config_path
from .fees import format_btc
from .indexer import IndexerClient, IndexerUnavailable
from .inscription import ContentItem, PayloadTooLarge
from .job_store import FileJobStore
from .keys import KeyValidationFailed
from .orchestrator import InscribeRequest, Inscriber, PendingJobExists
from .taproot import InvalidAddress
from .watcher import JobAbandoned

logger = logging.getLogger(__name__)


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Commit/reveal inscriptions through a block indexer")
    parser.add_argument("--config", default=None, help="Path to a tapscribe YAML config file")
    parser.add_argument(
        "--network", choices=["mainnet", "testnet", "signet"], default=None, help="Network to use"
    )
    parser.add_argument("--indexer-url", default=None, help="Override the indexer REST base URL")
    parser.add_argument("--job-path", default=None, help="Where the pending job is stored")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("inscribe", "Inscribe files or text and wait for funding"),
        ("estimate", "Show the funding address and amount without waiting"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--to-address", required=True, help="Taproot address receiving the inscriptions")
        sub.add_argument("files", nargs="*", help="Files to inscribe, in order")
        sub.add_argument("--text", default=None, help="Inscribe this text instead of files")
        sub.add_argument(
            "--media-type",
            default=None,
            help="Media type for --text, or for every file instead of guessing it",
        )
        sub.add_argument("--padding", type=int, default=None, help="Sats kept in each reveal output")
        sub.add_argument("--tip", type=int, default=None, help="Optional tip in sats (>= 500)")
        sub.add_argument("--tipping-address", default=None, help="Taproot address receiving the tip")
        sub.add_argument("--key", default=None, help="Hex private key to reuse instead of a fresh one")
        if name == "inscribe":
            sub.add_argument(
                "--replace", action="store_true", help="Overwrite an unfinished pending job"
            )
        else:
            sub.add_argument("--fee-rate", type=int, default=None, help="Use this sat/vB rate")

    subparsers.add_parser("resume", help="Resume the pending job, if any")
    subparsers.add_parser("abandon", help="Remove the pending job")
    return parser


def _load_items(args: argparse.Namespace) -> list[ContentItem]:
    if args.text is not None:
        return [ContentItem.from_text(args.text, args.media_type or "text/plain;charset=utf-8")]
    if not args.files:
        raise CLIError("Provide at least one file or --text")
    items = []
    for raw_path in args.files:
        path = Path(raw_path)
        if not path.is_file():
            raise CLIError(f"File not found: {path}")
        media_type = args.media_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        items.append(ContentItem.from_bytes(path.read_bytes(), media_type, name=path.name))
    return items


def _request_from_args(args: argparse.Namespace, config: TapscribeConfig) -> InscribeRequest:
    items = _load_items(args)
    media_type = args.media_type
    if args.text is not None:
        media_type = items[0].media_type
    return InscribeRequest(
        address=args.to_address,
        items=items,
        text=args.text,
        media_type=media_type,
        padding=args.padding if args.padding is not None else config.padding,
        tip=args.tip if args.tip is not None else config.tip,
        tipping_address=args.tipping_address or config.tipping_address,
        key=args.key,
        network=config.network,
    )


def _build_inscriber(config: TapscribeConfig) -> Inscriber:
    indexer = IndexerClient.from_config(config)
    return Inscriber.from_config(config, indexer, FileJobStore(config.job_path), log=print)


def cmd_inscribe(args: argparse.Namespace, config: TapscribeConfig) -> None:
    inscriber = _build_inscriber(config)
    if not args.replace and inscriber.job_store.exists():
        # a stored job may already hold funds; finish it before starting another
        logger.warning(
            "Resuming the pending job in %s; the new arguments are ignored (use --replace to discard it)",
            config.job_path,
        )
        result = inscriber.resume()
        if result is None:
            raise CLIError("The pending job disappeared before it could be resumed")
    else:
        result = inscriber.run(_request_from_args(args, config), replace=args.replace)
    print(json.dumps({"commit_txid": result.commit_txid, "inscriptions": result.inscription_ids}, indent=2))


def cmd_estimate(args: argparse.Namespace, config: TapscribeConfig) -> None:
    inscriber = _build_inscriber(config)
    prepared = inscriber.prepare(_request_from_args(args, config), fee_rate=args.fee_rate)
    requirement = prepared.requirement
    summary = {
        "funding_address": prepared.funding_address,
        "fee_rate_sat_vb": requirement.fee_rate,
        "total_sats": requirement.total,
        "rounded_sats": requirement.rounded_total,
        "rounded_btc": format_btc(requirement.rounded_total),
        "inscriptions": [
            {
                "name": inscription.item.name,
                "media_type": inscription.item.media_type,
                "bytes": inscription.item.size,
                "address": inscription.address,
                "vsize": inscription.vsize,
                "fee_sats": inscription.fee,
            }
            for inscription in prepared.inscriptions
        ],
    }
    print(json.dumps(summary, indent=2))


def cmd_resume(config: TapscribeConfig) -> None:
    result = _build_inscriber(config).resume()
    if result is None:
        print("No pending inscription job")
        return
    print(json.dumps({"commit_txid": result.commit_txid, "inscriptions": result.inscription_ids}, indent=2))


def cmd_abandon(config: TapscribeConfig) -> None:
    if not _build_inscriber(config).abandon():
        print("No pending inscription job")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    try:
        if args.config:
            set_default_config_path(args.config)
        config = load_config(
            overrides={
                "network": args.network,
                "indexer_url": args.indexer_url,
                "job_path": args.job_path,
            }
        )
        if args.command == "inscribe":
            cmd_inscribe(args, config)
        elif args.command == "estimate":
            cmd_estimate(args, config)
        elif args.command == "resume":
            cmd_resume(config)
        elif args.command == "abandon":
            cmd_abandon(config)
    except (
        CLIError,
        ConfigurationError,
        InvalidAddress,
        PayloadTooLarge,
        KeyValidationFailed,
        IndexerUnavailable,
        PendingJobExists,
        JobAbandoned,
        ValueError,
    ) as exc:
        logger.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        print("Interrupted; run `tapscribe resume` to continue the pending job", file=sys.stderr)
        return 130
    return 0


if __name__ == "__main__":  # pragma: no cover - manual invocation
    sys.exit(main())
