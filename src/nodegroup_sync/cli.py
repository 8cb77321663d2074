"""
Command-line interface for nodegroup-sync.

Usage (examples):
  - Plan only (groups are listed, nothing is changed):
      ngsync apply --manifest ./groups.yaml --dry-run

  - Converge for real:
      ngsync --server puppet.example --cert agent.pem --key agent.key --ca ca.pem \
        apply --manifest ./groups.yaml

  - Inspect:
      ngsync --format json list
      ngsync classify web01.example --facts '{"os": {"family": "RedHat"}}'
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .core.classifier_client import ClassifierClient, InvalidRequest, ServiceError
from .core.config import AppConfig, ConfigError, load_config
from .core.directory import GroupDirectory, NotFound
from .core.logging_setup import build_logger
from .core.model import DesiredGroup, Group, is_group_id
from .core.orchestrator import ClassifierSession, Orchestrator
from .core.reconcile import describe_group
from .core.validation import ValidationError
from .utils.reporting import print_rows, summarize_counts

log = logging.getLogger("ngs.cli")

EXIT_OK = 0
EXIT_GENERIC_ERROR = 1
EXIT_CONFIG_ERROR = 2
EXIT_VALIDATION_ERROR = 3
EXIT_NETWORK_ERROR = 4
EXIT_PARTIAL_FAILURE = 5


# ---------------- manifest ----------------

def load_manifest(path: str) -> List[DesiredGroup]:
    """Read desired groups from a YAML or JSON file.

    Accepted shapes: a mapping ``{name: attrs}``, the same under a top-level
    ``groups`` key, or a list of mappings each carrying ``name``.

    Raises:
        FileNotFoundError: When *path* does not exist.
        ValidationError: When the document has none of the accepted shapes.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Manifest not found: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            doc = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValidationError(f"{path}: not valid YAML/JSON: {exc}") from exc

    if isinstance(doc, dict) and set(doc) == {"groups"}:
        doc = doc["groups"]
    if doc is None:
        return []
    if isinstance(doc, dict):
        specs = []
        for name, attrs in doc.items():
            if attrs is not None and not isinstance(attrs, dict):
                raise ValidationError(f"{path}: attributes of {name!r} must be a mapping")
            specs.append(DesiredGroup.from_mapping(attrs or {}, name=str(name)))
        return specs
    if isinstance(doc, list):
        if not all(isinstance(item, dict) for item in doc):
            raise ValidationError(f"{path}: every list item must be a mapping")
        return [DesiredGroup.from_mapping(item) for item in doc]
    raise ValidationError(f"{path}: expected a mapping or a list of groups")


# ---------------- helpers ----------------

def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ngsync", description="Converge node classifier groups")

    # Classifier / TLS
    p.add_argument("--server", default="", help="Classifier host (default: agent certname)")
    p.add_argument("--port", type=int, default=None, help="Classifier port (default 4433)")
    p.add_argument("--prefix", default="", help="API prefix (default /classifier-api)")
    p.add_argument("--attempts", type=int, default=None, help="Attempts for 400/500 answers (default 5)")
    p.add_argument("--cert", default="", help="Client certificate (PEM)")
    p.add_argument("--key", default="", help="Client private key (PEM)")
    p.add_argument("--ca", default="", help="CA bundle used to verify the classifier")
    p.add_argument("--insecure", action="store_true", help="Do not verify the classifier certificate")

    # Output / logging
    p.add_argument("--format", default="table", choices=["table", "json"], help="Output format")
    p.add_argument("--logs-dir", default="", help="Logs base directory")
    p.add_argument("--console-level", default="", help="Console log level (INFO..CRITICAL)")

    sub = p.add_subparsers(dest="cmd", required=True)

    a = sub.add_parser("apply", help="Converge the groups of a manifest")
    a.add_argument("--manifest", required=True, help="YAML/JSON file of desired groups")
    a.add_argument("--dry-run", action="store_true", help="Plan only, no mutating calls")

    sub.add_parser("list", help="List existing groups")

    c = sub.add_parser("classify", help="Show the classification of a node")
    c.add_argument("certname")
    c.add_argument("--facts", default="", help="Facts as a JSON object")
    c.add_argument("--trusted", default="", help="Trusted facts as a JSON object")

    for name, verb in (("pin", "Pin"), ("unpin", "Unpin")):
        s = sub.add_parser(name, help=f"{verb} nodes to a group")
        s.add_argument("group", help="Group name or id")
        s.add_argument("nodes", nargs="+", help="Certnames")

    r = sub.add_parser("refresh-classes", help="Refresh the classifier class cache")
    r.add_argument("--environment", default=None, help="Only this environment")

    d = sub.add_parser("delete", help="Delete a group")
    d.add_argument("group", help="Group name or id")
    return p


def _overrides(args: argparse.Namespace) -> Dict[str, Any]:
    tls: Dict[str, Any] = {"cert": args.cert, "key": args.key, "ca": args.ca}
    if args.insecure:
        tls["verify"] = False
    return {
        "app": {"dry_run": bool(getattr(args, "dry_run", False)) or None},
        "classifier": {
            "server": args.server,
            "port": args.port,
            "prefix": args.prefix,
            "attempts": args.attempts,
        },
        "tls": tls,
        "logging": {"base_dir": args.logs_dir, "console_level": args.console_level},
    }


def _client(cfg: AppConfig, logger: logging.LoggerAdapter) -> ClassifierClient:
    return ClassifierClient(
        cfg.classifier.server,
        cfg.classifier.port,
        cfg.classifier.prefix,
        options=cfg.client_options(),
        logger=logger,
    )


def _json_arg(raw: str, label: str) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValidationError(f"--{label} is not valid JSON: {exc}") from exc
    if not isinstance(value, dict):
        raise ValidationError(f"--{label} must be a JSON object")
    return value


def _lookup(directory: GroupDirectory, ref: str) -> Group:
    group = directory.get(ref) if is_group_id(ref) else directory.find(ref)
    if group is None:
        raise NotFound(f"Node group '{ref}' not found")
    return group


# ---------------- commands ----------------

def _apply_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    specs = load_manifest(args.manifest)
    logger.info("Loaded %d desired group(s) from %s", len(specs), args.manifest)

    session = ClassifierSession(_client(cfg, logger), logger=logger)
    report = Orchestrator(session, dry_run=cfg.app.dry_run, logger=logger).converge(specs)

    print_rows(report.rows(), args.format)
    summary = summarize_counts(report.counts)
    logger.info("%s summary: %s", "Dry-run" if cfg.app.dry_run else "Apply", summary)
    print(summary)
    return EXIT_PARTIAL_FAILURE if report.any_error else EXIT_OK


def _list_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    directory = GroupDirectory.load(_client(cfg, logger), logger=logger)
    rows = [describe_group(g, directory) for g in directory]
    rows.sort(key=lambda r: r["name"].lower())
    print_rows(rows, args.format)
    return EXIT_OK


def _classify_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    facts = _json_arg(args.facts, "facts")
    trusted = _json_arg(args.trusted, "trusted")
    result = _client(cfg, logger).get_classification(args.certname, facts, trusted)
    print(json.dumps(result, indent=2, sort_keys=True))
    return EXIT_OK


def _pin_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    client = _client(cfg, logger)
    group = _lookup(GroupDirectory.load(client, logger=logger), args.group)
    if args.cmd == "pin":
        client.pin_nodes(group.id, args.nodes)
    else:
        client.unpin_nodes(group.id, args.nodes)
    print_rows([{"name": group.name, "id": group.id, "result": args.cmd, "changes": args.nodes}], args.format)
    return EXIT_OK


def _refresh_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    _client(cfg, logger).refresh_classes(args.environment)
    print(f"classes refreshed ({args.environment or 'all environments'})")
    return EXIT_OK


def _delete_cmd(args: argparse.Namespace, cfg: AppConfig, logger: logging.LoggerAdapter) -> int:
    client = _client(cfg, logger)
    directory = GroupDirectory.load(client, logger=logger)
    try:
        group = _lookup(directory, args.group)
    except NotFound:
        logger.info("Group %s already absent", args.group)
        print_rows([{"name": args.group, "result": "absent"}], args.format)
        return EXIT_OK
    client.delete_group(group.id)
    print_rows([{"name": group.name, "id": group.id, "result": "deleted"}], args.format)
    return EXIT_OK


_COMMANDS = {
    "apply": _apply_cmd,
    "list": _list_cmd,
    "classify": _classify_cmd,
    "pin": _pin_cmd,
    "unpin": _pin_cmd,
    "refresh-classes": _refresh_cmd,
    "delete": _delete_cmd,
}


def main(argv: Iterable[str] | None = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        cfg = load_config(_overrides(args))
        logger = build_logger(
            run_id=cfg.run_id,
            action=args.cmd,
            base_dir=cfg.logging.base_dir,
            console_level=cfg.logging.console_level,
            file_level=cfg.logging.file_level,
            server=cfg.classifier.server,
        )
    except ConfigError as exc:
        log.error("Configuration error: %s", exc)
        print(f"configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logger.info("Starting ngsync %s (dry_run=%s)", args.cmd, cfg.app.dry_run)
    try:
        return _COMMANDS[args.cmd](args, cfg, logger)
    except (ValidationError, FileNotFoundError, NotFound) as exc:
        logger.error("Validation error (%s): %s", type(exc).__name__, exc)
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_VALIDATION_ERROR
    except ServiceError as exc:
        logger.error("Classifier error: %s", exc)
        print(f"classifier error: {exc}", file=sys.stderr)
        return EXIT_NETWORK_ERROR
    except InvalidRequest as exc:  # pragma: no cover - programming error
        logger.exception("Invalid request: %s", exc)
        return EXIT_GENERIC_ERROR
    except Exception as exc:  # pragma: no cover - safety net
        logger.exception("Unexpected error: %s", exc)
        return EXIT_GENERIC_ERROR


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
