from __future__ import annotations

import argparse
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path

from .config import ReconConfig
from .models import RECONCILIATION_TYPES
from .normalization import NormalizationError
from .pipeline import run_reconciliation
from .report import truncate_messages

EXIT_ZERO_DELTA = 0
EXIT_DIFFERENCES = 1
EXIT_INVALID_INPUT = 2


def _amount(raw: str) -> Decimal:
    try:
        value = Decimal(raw.replace(",", "."))
    except InvalidOperation as exc:
        raise argparse.ArgumentTypeError(f"invalid amount: {raw!r}") from exc
    if not value.is_finite() or value < 0:
        raise argparse.ArgumentTypeError(f"amount must be non-negative: {raw!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Reconcile an accountant's IVA / Modelo 10 spreadsheet against system records")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Execute the reconciliation workflow")
    run_parser.add_argument(
        "--reference-file",
        type=Path,
        required=True,
        help="Reference spreadsheet (.xlsx, .csv or .json) prepared by the accountant.",
    )
    run_parser.add_argument(
        "--system-file",
        type=Path,
        required=True,
        help="Records exported from the bookkeeping system (.xlsx, .csv or .json).",
    )
    run_parser.add_argument(
        "--out-dir",
        type=Path,
        default=Path("out"),
        help="Directory that will receive the reconciliation artefacts.",
    )
    run_parser.add_argument(
        "--type",
        dest="recon_type",
        choices=RECONCILIATION_TYPES,
        default=None,
        help="Reconciliation type; detected from the reference columns when omitted.",
    )
    run_parser.add_argument(
        "--tolerance",
        type=_amount,
        default=None,
        help="Absolute euro difference still accepted as a match (default 0.01, or TAXRECON_TOLERANCE).",
    )
    run_parser.add_argument(
        "--critical-threshold",
        type=_amount,
        default=None,
        help="Euro difference above which a discrepancy is critical (default 1.00, or TAXRECON_CRITICAL_THRESHOLD).",
    )
    run_parser.add_argument("--client-name", default=None, help="Client shown in the audit report.")
    run_parser.add_argument("--fiscal-year", type=int, default=None)
    run_parser.add_argument("--quarter", type=int, choices=(1, 2, 3, 4), default=None)
    run_parser.add_argument(
        "--annotate",
        action="store_true",
        help="Explain discrepancies with the OpenAI API (rule-based without an API key).",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if args.command == "run":
        if args.tolerance is None or args.critical_threshold is None:
            try:
                config = ReconConfig.from_env()
            except ValueError as exc:
                parser.error(str(exc))
            if args.tolerance is None:
                args.tolerance = config.tolerance
            if args.critical_threshold is None:
                args.critical_threshold = config.critical_threshold

        try:
            outcome = run_reconciliation(
                reference_path=args.reference_file,
                system_path=args.system_file,
                out_dir=args.out_dir,
                tolerance=args.tolerance,
                critical_threshold=args.critical_threshold,
                recon_type=args.recon_type,
                client_name=args.client_name,
                fiscal_year=args.fiscal_year,
                quarter=args.quarter,
                annotate=args.annotate,
            )
        except (FileNotFoundError, NormalizationError) as exc:
            print(f"Error: {exc}")
            return EXIT_INVALID_INPUT

        if not outcome.success:
            print("Reconciliation aborted:")
            for line in truncate_messages(outcome.errors):
                print(f"  {line}")
            return EXIT_INVALID_INPUT

        summary = outcome.result.summary
        print(f"Conclusion: {outcome.conclusion}")
        print(f"- Match rate: {summary.match_rate}%")
        print(f"- Perfect / within tolerance / discrepancies: "
              f"{summary.perfect_matches} / {summary.within_tolerance} / {summary.outside_tolerance}")
        print(f"- Missing in system: {summary.missing}")
        print(f"- Extra in system: {summary.extra}")
        if outcome.warnings:
            print(f"- Import warnings: {len(outcome.warnings)}")
        for path in outcome.outputs:
            print(f"Wrote {path}")
        return EXIT_ZERO_DELTA if outcome.result.is_zero_delta else EXIT_DIFFERENCES

    parser.error("Unknown command")
    return 1


if __name__ == "__main__":  # pragma: no cover - exercised via CLI entry point
    raise SystemExit(main())
