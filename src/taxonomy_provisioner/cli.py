"""Command-line interface (CLI) entrypoint.

Objective:
    Provide a human-friendly CLI wrapper around
    :class:`src.taxonomy_provisioner.provisioner.FolderProvisioner`.

Responsibilities:
    - Parse arguments (subcommand, business types, roster, verbosity).
    - Configure logging (including suppressing noisy HTTP connection logs).
    - Invoke the provisioner and print a readable summary of results.

High-level call tree:
    - :func:`main`
        - :func:`setup_logging`
            - installs :class:`_HttpConnectionInfoToDebugFilter`
        - :func:`build_provisioner`
        - ``preview``   -> :meth:`SchemaCompiler.compile`      -> :func:`print_taxonomy`
        - ``provision`` -> :meth:`FolderProvisioner.provision` -> :func:`print_outcome`
        - ``health``    -> :meth:`FolderProvisioner.check_health` -> :func:`print_health`

Operational notes:
    - ``--token`` supplies a fixed bearer credential for every provider;
      without it ``GMAIL_ACCESS_TOKEN`` / ``OUTLOOK_ACCESS_TOKEN`` are used,
      with MSAL client credentials as the Outlook fallback.
    - Exit code is 1 on a fatal error or when a top-level category could not
      be provisioned.
"""

import argparse
import json
import logging
import sys
from typing import Optional

from .config import ProviderKind, get_settings
from .credentials import CachedCredentialSource, CredentialCache, StaticCredentialIssuer
from .errors import FatalProvisioningError
from .models import CompiledTaxonomy, HealthReport, Roster, TaxonomyNode
from .provisioner import FolderProvisioner, ProvisioningOutcome, provisioning_feedback
from .schema_compiler import CompilationError, SchemaCompiler
from .templates import UnknownBusinessTypeError


class _HttpConnectionInfoToDebugFilter(logging.Filter):
    """Filter to suppress noisy urllib3 connection logs.

    ``requests`` logs every new connection through urllib3. This filter hides
    those messages unless the root logger is in DEBUG mode.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """Determine whether a log record should be emitted.

        Args:
            record: Log record emitted by the logging framework.

        Returns:
            bool: True to allow emission, False to suppress.
        """
        if record.name.startswith("urllib3") and "connection" in record.getMessage().lower():
            # Only show connection logs when running in DEBUG/verbose mode.
            return logging.getLogger().isEnabledFor(logging.DEBUG)
        return True


def setup_logging(level: str = "INFO") -> None:
    """
    Configure logging for the application.

    This sets the root logger level and installs the
    :class:`_HttpConnectionInfoToDebugFilter` on all root handlers.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR).
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
        ],
    )

    root_logger = logging.getLogger()
    downgrade_filter = _HttpConnectionInfoToDebugFilter()
    for handler in root_logger.handlers:
        handler.addFilter(downgrade_filter)


def _print_nodes(nodes: list[TaxonomyNode], depth: int) -> None:
    for node in nodes:
        marker = " *" if node.dynamic else ""
        print(f"{'  ' * depth}- {node.name}{marker}")
        _print_nodes(node.children, depth + 1)


def print_taxonomy(taxonomy: CompiledTaxonomy) -> None:
    """
    Print a compiled taxonomy as an indented tree.

    Team-derived nodes are marked with ``*``.

    Args:
        taxonomy: Compiled taxonomy.
    """
    print(f"\n{'='*60}")
    print(f"TAXONOMY: {', '.join(taxonomy.business_types)}")
    print(f"{'='*60}\n")
    _print_nodes(taxonomy.ordered_categories(), 0)
    print(f"\n{taxonomy.node_count()} folders in {len(taxonomy.categories)} categories\n")


def print_outcome(outcome: ProvisioningOutcome, verbose: bool = False) -> None:
    """
    Print a provisioning outcome to console.

    Args:
        outcome: Provisioning outcome.
        verbose: If True, list every created folder and the label map.
    """
    feedback = provisioning_feedback(outcome)
    result = outcome.result

    print(f"\n{'='*60}")
    print(f"{feedback['title'].upper()}: {outcome.user_id} ({outcome.provider.value})")
    print(f"{'='*60}\n")
    print(feedback["message"])

    if verbose:
        for entry in result.created:
            print(f"  + {entry.path}")
        for key, remote_id in sorted(outcome.label_map.items()):
            print(f"  {key} = {remote_id}")

    for error in result.errors:
        print(f"  ! {error.path}: {error.error}")

    if outcome.health is not None:
        print(f"\nHealth: {outcome.health.health_percentage}%")
        for warning in outcome.health.warnings:
            print(f"  ! {warning}")

    summary = result.summary()
    print(f"\n{'='*60}")
    print(
        f"SUMMARY: {summary['created']} created, {summary['matched']} existing, "
        f"{summary['errors']} failed"
    )
    print(f"{'='*60}\n")


def print_health(report: HealthReport, verbose: bool = False) -> None:
    """Print a health report to console."""
    coverage = report.classifier_coverage
    print(f"\n{'='*60}")
    print(f"FOLDER HEALTH: {report.total_found}/{report.total_expected} present "
          f"({report.health_percentage}%)")
    print(f"{'='*60}\n")
    if report.needs_sync:
        print("Folders exist but none are recorded; run 'provision' to sync.")
    for path in report.missing_folders:
        print(f"  - missing: {path}")
    print(
        f"Classifier coverage: {coverage.classifiable_folders}/{coverage.total_folders} "
        f"({coverage.coverage_percentage}%)"
    )
    if verbose:
        for name in coverage.unclassifiable_folders:
            print(f"  ? {name}")
    for warning in report.warnings:
        print(f"  ! {warning}")
    print()


def build_provisioner(token: Optional[str] = None) -> FolderProvisioner:
    """
    Build a provisioner from environment settings.

    Args:
        token: Fixed bearer token; when given it is used for every provider.

    Returns:
        FolderProvisioner: Configured provisioner.
    """
    settings = get_settings()
    credentials = None
    if token:
        credentials = CachedCredentialSource(
            StaticCredentialIssuer({kind.value: token for kind in ProviderKind}),
            CredentialCache(settings.credential_ttl_seconds),
        )
    return FolderProvisioner(settings=settings, credentials=credentials)


def _add_taxonomy_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--business-type",
        "-b",
        dest="business_types",
        action="append",
        default=[],
        help="Business type (repeatable, e.g. 'Pools & Spas', 'HVAC')",
    )
    parser.add_argument(
        "--manager",
        "-m",
        dest="managers",
        action="append",
        default=[],
        help="Manager name (repeatable, order defines slots)",
    )
    parser.add_argument(
        "--supplier",
        "-s",
        dest="suppliers",
        action="append",
        default=[],
        help="Supplier name (repeatable, order defines slots)",
    )


def _add_mailbox_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--user", "-u", required=True, help="Mailbox owner ID")
    parser.add_argument(
        "--provider",
        "-p",
        required=True,
        choices=[kind.value for kind in ProviderKind],
        help="Mailbox provider",
    )
    parser.add_argument(
        "--token",
        type=str,
        default=None,
        help="Bearer token to use instead of MSAL client credentials",
    )


def main(args: Optional[list[str]] = None) -> int:
    """
    Main CLI entry point.

    This function is structured to be testable: pass an explicit ``args`` list
    instead of relying on ``sys.argv``.

    Args:
        args: Command line arguments (uses sys.argv if None).

    Returns:
        int: Exit code (0 for success, 1 for error).
    """
    parser = argparse.ArgumentParser(
        description="Taxonomy Provisioner - mailbox folder/label reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s preview -b HVAC -m Alice -s Acme
  %(prog)s provision -u me -p gmail -b "Pools & Spas" --token $TOKEN
  %(prog)s health -u someone@tenant.com -p outlook
        """,
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose output",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    preview_parser = subparsers.add_parser("preview", help="Print the compiled taxonomy")
    _add_taxonomy_arguments(preview_parser)
    preview_parser.add_argument(
        "--json", action="store_true", help="Print the taxonomy as JSON"
    )

    provision_parser = subparsers.add_parser("provision", help="Provision a mailbox")
    _add_mailbox_arguments(provision_parser)
    _add_taxonomy_arguments(provision_parser)
    provision_parser.add_argument(
        "--force",
        "-f",
        action="store_true",
        help="Reconcile even if the mailbox already looks provisioned",
    )

    health_parser = subparsers.add_parser("health", help="Report folder health")
    _add_mailbox_arguments(health_parser)
    _add_taxonomy_arguments(health_parser)

    parsed_args = parser.parse_args(args)

    # Setup logging
    log_level = "DEBUG" if parsed_args.verbose else parsed_args.log_level
    setup_logging(log_level)

    logger = logging.getLogger(__name__)

    roster = Roster.from_names(parsed_args.managers, parsed_args.suppliers)

    try:
        if parsed_args.command == "preview":
            settings = get_settings()
            compiler = SchemaCompiler(
                team_folders_for_all_members=settings.team_folders_for_all_members,
                default_business_type=settings.default_business_type,
            )
            taxonomy = compiler.compile(parsed_args.business_types, roster)
            if parsed_args.json:
                print(json.dumps(taxonomy.model_dump(mode="json", by_alias=True), indent=2))
            else:
                print_taxonomy(taxonomy)
            return 0

        provisioner = build_provisioner(parsed_args.token)

        if parsed_args.command == "provision":
            outcome = provisioner.provision(
                parsed_args.user,
                ProviderKind(parsed_args.provider),
                parsed_args.business_types,
                roster,
                force=parsed_args.force,
            )
            print_outcome(outcome, verbose=parsed_args.verbose)
            return 0 if outcome.success else 1

        report = provisioner.check_health(
            parsed_args.user,
            ProviderKind(parsed_args.provider),
            parsed_args.business_types or None,
            roster,
        )
        print_health(report, verbose=parsed_args.verbose)
        return 0

    except (UnknownBusinessTypeError, CompilationError) as e:
        logger.error(str(e))
        print(f"\nError: {e}\n")
        return 1

    except FatalProvisioningError as e:
        logger.error(f"Provisioning aborted: {e}")
        print(f"\nError: {e}\n")
        return 1

    except Exception as e:
        logger.exception("Fatal error")
        print(f"\nError: {e}\n")
        return 1


if __name__ == "__main__":
    sys.exit(main())
