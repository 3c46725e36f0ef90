"""Generate a hierarchy of SM2/SM3 test certificate authorities and leaves.

For every organization a self-signed root authority is created together with
its server and client certificates, then child authorities signed by the root,
each with their own server and client certificates. Every entity is written
as <name>-key.pem and <name>-cert.pem.
"""

import argparse
import logging
import sys
from pathlib import Path

from shared.config import settings
from shared.logging import setup_logging
from shared.metrics import setup_metrics
from shared.tracing import setup_tracing

from gmpki.services.hierarchy import HierarchyGenerator, HierarchyOptions, plan_hierarchy

logger = logging.getLogger(__name__)


def non_negative_int(s: str) -> int:
    value = int(s)
    if value < 0:
        raise argparse.ArgumentTypeError(f"Must not be negative: {s}")
    return value


def base_name(s: str) -> str:
    if not s:
        raise argparse.ArgumentTypeError("Must not be empty")
    return s


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gmpki-gencerts",
        description=__doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--orgs",
        default=settings.PKI_ORGS,
        help="Number of unique organizations (default: %(default)s)",
        type=non_negative_int,
    )
    parser.add_argument(
        "--child-orgs",
        default=settings.PKI_CHILD_ORGS,
        help="Number of intermediate authorities per authority (default: %(default)s)",
        type=non_negative_int,
    )
    parser.add_argument(
        "--servers",
        default=settings.PKI_SERVERS,
        help="Number of server certificates per authority (default: %(default)s)",
        type=non_negative_int,
    )
    parser.add_argument(
        "--clients",
        default=settings.PKI_CLIENTS,
        help="Number of client certificates per authority (default: %(default)s)",
        type=non_negative_int,
    )
    parser.add_argument(
        "--depth",
        default=settings.PKI_NESTING_DEPTH,
        help="Levels of intermediate authorities below each root (default: %(default)s)",
        type=non_negative_int,
    )
    parser.add_argument(
        "--base-name",
        default=settings.PKI_BASE_NAME,
        help="Prefix for organization names (default: %(default)s)",
        type=base_name,
    )
    parser.add_argument(
        "-o",
        "--output-dir",
        default=settings.PKI_OUTPUT_DIR,
        help="Directory to write PEM files to (default: %(default)s)",
        type=Path,
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase logging verbosity",
    )
    return parser


def log_level(verbose: int) -> str:
    if verbose == 0:
        return settings.LOG_LEVEL
    elif verbose == 1:
        return "INFO"
    return "DEBUG"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(log_level(args.verbose))
    setup_tracing(settings.APP_NAME)
    setup_metrics(settings.APP_NAME)

    options = HierarchyOptions(
        org_count=args.orgs,
        child_org_count=args.child_orgs,
        server_count=args.servers,
        client_count=args.clients,
        nesting_depth=args.depth,
        base_name=args.base_name,
    )
    output_dir: Path = args.output_dir
    output_dir.mkdir(parents=True, exist_ok=True)

    print(
        f"Generating {options.org_count} organizations each with {options.child_org_count} "
        f"child organization(s), {options.server_count} server(s) and {options.client_count} client(s)"
    )

    report = HierarchyGenerator(output_dir).generate(plan_hierarchy(options))

    for entity in report.issued:
        print(entity.name)
    for failure in report.failures:
        print(f"error generating {failure.name} ({failure.location}): {failure.error}", file=sys.stderr)

    return 0 if report.ok else 1


if __name__ == "__main__":
    sys.exit(main())
