from magiccall.calling import call_from_map
from magiccall.errors import UncallableMarker
from magiccall.imputed import load_imputed_map, read_raw_data
from magiccall.log import logger
from magiccall.scan import score_positions
from magiccall.viz import Visualizer

import argparse
import os
import re
from multiprocessing import cpu_count
from typing import Dict, List

import pandas as pd
import matplotlib.pyplot as plt


def make_safe_name(name: str, counters: Dict[str, int]) -> str:
    safe = re.sub(r"[^\w.-]+", "_", name.strip())
    if not safe:
        safe = "marker"
    occurrence = counters.get(safe, 0)
    counters[safe] = occurrence + 1
    if occurrence:
        safe = f"{safe}_{occurrence}"
    return safe


def marker_names(raw_files: List[str], names: List[str] = None) -> List[str]:
    if names:
        if len(names) != len(raw_files):
            raise ValueError(
                f"--names count ({len(names)}) must match the number of raw data files provided ({len(raw_files)})."
            )
        labels = names
    else:
        labels = [os.path.splitext(os.path.basename(path))[0] for path in raw_files]
    counters: Dict[str, int] = {}
    return [make_safe_name(label, counters) for label in labels]


def run_scan(args):
    """Process scan subcommand."""
    logger.info("Initializing association scan...")
    imputed_map = load_imputed_map(args.founders, args.map)
    for raw_file, name in zip(args.raw, marker_names(args.raw, args.names)):
        raw_data = read_raw_data(raw_file)
        scores = score_positions(raw_data, imputed_map)
        chromosomes = {
            position: chrom
            for chrom in imputed_map.chromosomes()
            for position in imputed_map.positions_for_chromosome(chrom)
        }
        out_df = pd.DataFrame({
            "chr": [chromosomes[p] for p in scores.index],
            "position": scores.index,
            "score": scores.to_numpy(),
        })
        out_path = os.path.join(args.out_dir, f"{args.out_name}.{name}.scores.csv")
        out_df.to_csv(out_path, index=False, float_format="%.6g")
        logger.info(f"Saved association scores for {name} to {out_path}.")
    logger.info("Done!")


def run_call(args):
    """Process call subcommand."""
    logger.info("Initializing marker calling...")
    imputed_map = load_imputed_map(args.founders, args.map)

    summary = []
    for raw_file, name in zip(args.raw, marker_names(args.raw, args.names)):
        logger.info(f"Calling marker {name} from {raw_file}")
        raw_data = read_raw_data(raw_file)
        try:
            result = call_from_map(
                raw_data,
                imputed_map,
                threshold_chromosomes=args.threshold_chromosomes,
                threshold_allele_clusters=args.threshold_allele_clusters,
                max_chromosomes=args.max_chromosomes,
                t_distribution_pvalue=args.t_pvalue,
                min_group_size=args.min_group_size,
                fit_timeout=args.fit_timeout,
                threads=args.threads,
            )
        except UncallableMarker as e:
            logger.warning(f"Marker {name} is uncallable: {e}")
            summary.append({"marker": name, "status": e.reason, "positions": "", "groups": 0, "detail": str(e)})
            continue

        prefix = os.path.join(args.out_dir, f"{args.out_name}.{name}")
        result.to_frame().to_csv(f"{prefix}.calls.csv")
        result.founders_frame().to_csv(f"{prefix}.founders.csv")
        result.pvalues_frame().to_csv(f"{prefix}.pvalues.csv", index=False, float_format="%.6g")
        logger.info(f"Saved calls for marker {name} to {prefix}.calls.csv")
        summary.append({
            "marker": name,
            "status": "called",
            "positions": ";".join(result.positions),
            "groups": result.n_groups,
            "detail": f"threshold={result.threshold:.3g}",
        })

        if args.plot:
            fig, ax = plt.subplots(figsize=(args.width, args.height))
            Visualizer().plot_calls(raw_data, result, title=name, ax=ax)
            Visualizer().save(fig, f"{prefix}.{args.format}")

    summary_path = os.path.join(args.out_dir, f"{args.out_name}.summary.csv")
    pd.DataFrame(summary, columns=["marker", "status", "positions", "groups", "detail"]).to_csv(summary_path, index=False)
    called = sum(row["status"] == "called" for row in summary)
    logger.info(f"Called {called} of {len(summary)} markers. Summary saved to {summary_path}.")
    logger.info("Done!")


def main():
    parser = argparse.ArgumentParser(
        prog="magiccall",
        description="Call multi-founder markers from an existing genetic map with imputed founders",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available subcommands")

    # shared input options
    input_parser = argparse.ArgumentParser(add_help=False)
    input_parser.add_argument("--raw", type=str, nargs="+", required=True, help="Path(s) to raw marker data file(s): line id followed by one or two value columns")
    input_parser.add_argument("--founders", type=str, required=True, help="Path to imputed founders file: line id followed by one column per map position")
    input_parser.add_argument("--map", type=str, required=True, help="Path to genetic map file with columns chr and position")
    input_parser.add_argument("--names", type=str, nargs="+", help="Marker names in the order of --raw (default: raw file names)")
    input_parser.add_argument("--out_dir", type=str, default=".", help="Output directory (default: %(default)s)")
    input_parser.add_argument("--out_name", type=str, default="magiccall", help="Output file name prefix (default: %(default)s)")

    # scan subcommand
    scan_parser = subparsers.add_parser("scan", parents=[input_parser], help="Score marker association at every map position")
    scan_parser.set_defaults(func=run_scan)

    # call subcommand
    call_parser = subparsers.add_parser("call", parents=[input_parser], help="Call markers from the imputed map")
    call_parser.add_argument("--threshold_chromosomes", type=float, default=100, help="Association score a chromosome must exceed (default: %(default)s)")
    call_parser.add_argument(
        "--threshold_allele_clusters",
        type=float,
        nargs="+",
        default=[1e-10, 1e-20, 1e-30, 1e-40],
        metavar="P",
        help="Candidate p-value thresholds for joining founders into one allele, tried from smallest to largest (default: %(default)s)",
    )
    call_parser.add_argument("--max_chromosomes", type=int, default=2, help="Maximum number of chromosomes a marker may be polymorphic on (default: %(default)s)")
    call_parser.add_argument("--t_pvalue", type=float, default=0.6, help="Probability enclosed by each cluster contour, between 0 and 1 (default: %(default)s)")
    call_parser.add_argument("--min_group_size", type=int, default=10, help="Minimum number of lines to fit a combined group (default: %(default)s)")
    call_parser.add_argument("--fit_timeout", type=float, default=120, help="Time limit in seconds per skew-t fit attempt (default: %(default)s)")
    call_parser.add_argument("--threads", type=int, default=cpu_count(), help="Number of threads (default: %(default)s)")
    call_parser.add_argument("--plot", action="store_true", help="Whether to plot the calls of each marker")
    call_parser.add_argument("--width", type=float, default=5, help="Figure width (default: %(default)s)")
    call_parser.add_argument("--height", type=float, default=5, help="Figure height (default: %(default)s)")
    call_parser.add_argument("--format", type=str, default="png", help="Output format, e.g., pdf or png (default: %(default)s)")
    call_parser.set_defaults(func=run_call)

    # Parse arguments and execute the corresponding subcommand
    args = parser.parse_args()
    if args.command:
        # Create output directory if it doesn't exist
        os.makedirs(args.out_dir, exist_ok=True)
        args.func(args)
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
