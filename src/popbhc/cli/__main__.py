"""Command-line entry point for popbhc."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from importlib import metadata
from pathlib import Path
from typing import Any, Iterable, Sequence

import pandas as pd
from Bio.Phylo.BaseTree import Tree
from Bio.Phylo.NewickIO import NewickError

from popbhc.clustering import (
    BHCEngine,
    BHCParameters,
    Dendrogram,
    Partition,
    bootstrap,
    coarse_seed_partition,
    dendrogram_from_tree,
    multi_resolution,
    select_partition,
)
from popbhc.config import (
    DEFAULT_CONFIG,
    ConfigurationError,
    load_configuration,
    merge_configurations,
    parameters_from_config,
    search_from_config,
)
from popbhc.data import MissingColumnsError, SparseCountStore, load_alignment, load_seed_labels, load_tree
from popbhc.diagnostics import cluster_table, summarize_run, write_csv, write_json
from popbhc.errors import BHCError
from popbhc.scoring import Prior, PriorPolicy, optimise_prior


logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class PopBHCCliError(RuntimeError):
    """Raised when CLI arguments cannot be satisfied."""


def _get_package_version() -> str:
    try:
        return metadata.version("popbhc-python")
    except metadata.PackageNotFoundError:
        return "0.0.0"


def setup_logging(level: str, log_file: Path | None = None) -> None:
    """Route library log records to stderr and, optionally, a file."""

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )


def _add_alignment_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--alignment",
        required=True,
        help="Aligned sequences (FASTA or any Bio.SeqIO alignment format)",
    )
    parser.add_argument(
        "--format",
        dest="alignment_format",
        help="Bio.SeqIO format name; inferred from the file suffix when omitted",
    )
    parser.add_argument(
        "--polymorphic-only",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Drop sites with a single observed allele",
    )
    parser.add_argument(
        "--policy",
        help="Prior policy: symmetric, optimise.symmetric, baps or hc (default from config: baps)",
    )


def _add_engine_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--concentration",
        type=float,
        help="Dirichlet-process concentration (defaults to 1/N)",
    )
    parser.add_argument(
        "--max-full-frontier",
        type=int,
        help="Score every pair while at most this many clusters remain",
    )
    parser.add_argument(
        "--n-neighbors",
        type=int,
        help="Candidate neighbours per new cluster on larger frontiers",
    )
    parser.add_argument(
        "--n-jobs",
        type=int,
        help="Worker threads or processes",
    )
    parser.add_argument(
        "--seed",
        dest="seeding",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Start from a coarse distance-based seed partition",
    )
    parser.add_argument(
        "--k-init",
        type=int,
        help="Number of seed clusters (defaults to ceil(N/4))",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="popbhc",
        description="Bayesian hierarchical clustering of aligned sequences into populations",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    version = _get_package_version()
    parser.add_argument(
        "--version",
        action="store_true",
        help=f"Show the installed popbhc-python version ({version})",
    )
    parser.add_argument(
        "--log-level",
        choices=LOG_LEVELS,
        default="WARNING",
        help="Logging verbosity",
    )
    parser.add_argument(
        "--log-file",
        help="Optional file receiving a copy of the log",
    )
    parser.add_argument(
        "--config",
        help="JSON configuration file; command-line flags take precedence",
    )

    subparsers = parser.add_subparsers(dest="command", metavar="command")

    prior = subparsers.add_parser(
        "prior",
        help="Compute per-site prior hyperparameters",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_alignment_arguments(prior)
    prior.add_argument(
        "--output",
        required=True,
        help="Destination for per-site concentrations (CSV or JSON lines)",
    )
    prior.add_argument(
        "--summary",
        help="Optional path to persist the prior summary (JSON)",
    )
    prior.set_defaults(handler=_handle_prior)

    cluster = subparsers.add_parser(
        "cluster",
        help="Build a dendrogram and write the posterior partition",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_alignment_arguments(cluster)
    _add_engine_arguments(cluster)
    cluster.add_argument(
        "--output",
        required=True,
        help="Destination for the SequenceId/Cluster table (CSV or JSON lines)",
    )
    cluster.add_argument(
        "--tree",
        help="Rooted bifurcating Newick tree to condition the partition on",
    )
    cluster.add_argument(
        "--seed-partition",
        help="CSV with SequenceId and Cluster columns used as seed leaves",
    )
    cluster.add_argument(
        "--threshold",
        type=float,
        help="Merge probability at or above which a subtree is kept whole",
    )
    cluster.add_argument(
        "--dendrogram",
        help="Optional path to persist the merge table (CSV or JSON lines)",
    )
    cluster.add_argument(
        "--trace-out",
        help="Optional path for per-merge trace records",
    )
    cluster.add_argument(
        "--trace-format",
        choices=["jsonl", "csv"],
        default="jsonl",
        help="Format used when writing --trace-out",
    )
    cluster.add_argument(
        "--summary-dir",
        help="Directory receiving the versioned run summary JSON",
    )
    cluster.set_defaults(handler=_handle_cluster)

    multires = subparsers.add_parser(
        "multires",
        help="Recursively partition into nested resolution levels",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_alignment_arguments(multires)
    _add_engine_arguments(multires)
    multires.add_argument(
        "--levels",
        type=int,
        help="Number of resolution levels",
    )
    multires.add_argument(
        "--min-split-size",
        type=int,
        help="Clusters smaller than this are not split further",
    )
    multires.add_argument(
        "--output",
        required=True,
        help="Destination for the Isolates/Level table (CSV or JSON lines)",
    )
    multires.set_defaults(handler=_handle_multires)

    boot = subparsers.add_parser(
        "bootstrap",
        help="Estimate co-clustering stability by resampling sites",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    _add_alignment_arguments(boot)
    _add_engine_arguments(boot)
    boot.add_argument(
        "--replicates",
        type=int,
        help="Number of bootstrap replicates",
    )
    boot.add_argument(
        "--random-seed",
        type=int,
        help="Seed for replicate resampling",
    )
    boot.add_argument(
        "--raw-counts",
        action="store_true",
        help="Write co-clustering counts instead of frequencies",
    )
    boot.add_argument(
        "--output",
        required=True,
        help="Destination for the co-clustering matrix (CSV)",
    )
    boot.set_defaults(handler=_handle_bootstrap)

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if getattr(args, "version", False):
        print(f"popbhc-python {_get_package_version()}")
        raise SystemExit(0)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return

    setup_logging(args.log_level, Path(args.log_file) if args.log_file else None)

    try:
        args.settings = _resolve_settings(args)
        handler(args)
    except PopBHCCliError as exc:
        raise SystemExit(f"Error: {exc}") from exc


def _resolve_settings(args: argparse.Namespace) -> dict[str, Any]:
    try:
        config = load_configuration(args.config) if args.config else merge_configurations(DEFAULT_CONFIG, {})
    except FileNotFoundError as exc:
        raise PopBHCCliError(f"Configuration file '{args.config}' was not found") from exc
    except ConfigurationError as exc:
        raise PopBHCCliError(str(exc)) from exc

    overrides: dict[str, dict[str, Any]] = {
        "alignment": {
            "format": getattr(args, "alignment_format", None),
            "polymorphic_only": getattr(args, "polymorphic_only", None),
        },
        "prior": {"policy": getattr(args, "policy", None)},
        "engine": {
            "concentration": getattr(args, "concentration", None),
            "max_full_frontier": getattr(args, "max_full_frontier", None),
            "n_neighbors": getattr(args, "n_neighbors", None),
            "n_jobs": getattr(args, "n_jobs", None),
        },
        "selection": {"threshold": getattr(args, "threshold", None)},
        "seeding": {
            "enabled": getattr(args, "seeding", None),
            "k_init": getattr(args, "k_init", None),
        },
        "multires": {
            "levels": getattr(args, "levels", None),
            "min_split_size": getattr(args, "min_split_size", None),
        },
        "bootstrap": {
            "replicates": getattr(args, "replicates", None),
            "seed": getattr(args, "random_seed", None),
        },
    }
    supplied = {
        section: {key: value for key, value in values.items() if value is not None}
        for section, values in overrides.items()
    }
    try:
        return merge_configurations(config, {key: value for key, value in supplied.items() if value})
    except ConfigurationError as exc:
        raise PopBHCCliError(str(exc)) from exc


def _handle_prior(args: argparse.Namespace) -> None:
    settings = args.settings
    store = _load_store(args.alignment, settings)
    prior = _build_prior(store, settings)

    _write_table(prior.to_frame(store.site_positions), Path(args.output))
    if args.summary:
        _write_json(prior.summary(), Path(args.summary))
    print(f"Built {prior.policy.value} prior over {prior.n_sites} sites for {store.n_sequences} sequences")


def _handle_cluster(args: argparse.Namespace) -> None:
    settings = args.settings
    if args.tree and (args.seed_partition or settings["seeding"]["enabled"]):
        raise PopBHCCliError("--tree cannot be combined with seeding")

    store = _load_store(args.alignment, settings)
    prior = _build_prior(store, settings)
    params = _engine_parameters(settings)

    try:
        if args.tree:
            tree = _load_tree(Path(args.tree))
            dendrogram = dendrogram_from_tree(store, tree, prior, concentration=params.concentration)
        else:
            seed_partition = _seed_partition(args, store, settings)
            dendrogram = BHCEngine.from_parameters(params).build(store, prior, seed_partition)
        partition = select_partition(dendrogram, settings["selection"]["threshold"])
    except (BHCError, ValueError) as exc:
        raise PopBHCCliError(str(exc)) from exc

    _write_table(partition.to_frame(), Path(args.output))
    if args.dendrogram:
        _write_table(dendrogram.to_frame(), Path(args.dendrogram))
    if args.trace_out:
        _write_trace(
            (record.to_dict() for record in dendrogram.iter_traces()),
            Path(args.trace_out),
            format_hint=args.trace_format,
        )
    if args.summary_dir:
        _emit_summary(store, prior, dendrogram, partition, Path(args.summary_dir))

    print(f"Found {partition.n_clusters} clusters across {partition.n_sequences} sequences")


def _handle_multires(args: argparse.Namespace) -> None:
    settings = args.settings
    store = _load_store(args.alignment, settings)
    params = _engine_parameters(settings)

    try:
        result = multi_resolution(
            store,
            settings["multires"]["levels"],
            policy=settings["prior"]["policy"],
            min_split_size=settings["multires"]["min_split_size"],
            engine=BHCEngine.from_parameters(replace(params, n_jobs=1)),
            k_init=settings["seeding"]["k_init"],
            seed=settings["seeding"]["enabled"],
            search=search_from_config(settings),
            n_jobs=params.n_jobs,
        )
    except (BHCError, ValueError) as exc:
        raise PopBHCCliError(str(exc)) from exc

    _write_table(result.to_frame(), Path(args.output))
    counts = ", ".join(str(partition.n_clusters) for partition in result.levels)
    print(f"Wrote {result.n_levels} levels ({counts} clusters)")


def _handle_bootstrap(args: argparse.Namespace) -> None:
    settings = args.settings
    store = _load_store(args.alignment, settings)
    prior = _build_prior(store, settings)
    params = _engine_parameters(settings)

    try:
        matrix = bootstrap(
            store,
            settings["bootstrap"]["replicates"],
            prior,
            engine=BHCEngine.from_parameters(replace(params, n_jobs=1)),
            seed=settings["bootstrap"]["seed"],
            k_init=settings["seeding"]["k_init"],
            use_seed_partition=settings["seeding"]["enabled"],
            threshold=settings["selection"]["threshold"],
            n_jobs=params.n_jobs,
        )
        frame = matrix.to_frame(normalised=not args.raw_counts)
    except (BHCError, ValueError) as exc:
        raise PopBHCCliError(str(exc)) from exc

    path = Path(args.output).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    frame.to_csv(path, index_label="SequenceId")
    print(f"Completed {matrix.replicates} of {matrix.requested} bootstrap replicates")


def _load_store(location: str, settings: dict[str, Any]) -> SparseCountStore:
    alignment = settings["alignment"]
    try:
        return load_alignment(
            location,
            format=alignment["format"],
            polymorphic_only=alignment["polymorphic_only"],
        )
    except FileNotFoundError as exc:
        raise PopBHCCliError(f"Alignment file '{location}' was not found") from exc
    except (BHCError, ValueError) as exc:
        raise PopBHCCliError(str(exc)) from exc


def _load_tree(path: Path) -> Tree:
    try:
        return load_tree(path)
    except FileNotFoundError as exc:
        raise PopBHCCliError(f"Tree file '{path}' was not found") from exc
    except (NewickError, ValueError) as exc:
        raise PopBHCCliError(f"Could not parse tree '{path}': {exc}") from exc


def _build_prior(store: SparseCountStore, settings: dict[str, Any]) -> Prior:
    try:
        policy = PriorPolicy.parse(settings["prior"]["policy"])
        return optimise_prior(store, policy, search=search_from_config(settings))
    except (BHCError, ValueError) as exc:
        raise PopBHCCliError(str(exc)) from exc


def _engine_parameters(settings: dict[str, Any]) -> BHCParameters:
    try:
        return parameters_from_config(settings)
    except ConfigurationError as exc:
        raise PopBHCCliError(str(exc)) from exc


def _seed_partition(
    args: argparse.Namespace,
    store: SparseCountStore,
    settings: dict[str, Any],
) -> Partition | None:
    if args.seed_partition:
        try:
            labels = load_seed_labels(args.seed_partition, store.sequence_ids)
        except FileNotFoundError as exc:
            raise PopBHCCliError(f"Seed partition file '{args.seed_partition}' was not found") from exc
        except MissingColumnsError as exc:
            raise PopBHCCliError(str(exc)) from exc
        return Partition.from_labels(labels, store.sequence_ids)

    seeding = settings["seeding"]
    if seeding["enabled"]:
        return coarse_seed_partition(store, seeding["k_init"], seeding["method"])
    return None


def _emit_summary(
    store: SparseCountStore,
    prior: Prior,
    dendrogram: Dendrogram,
    partition: Partition,
    directory: Path,
) -> None:
    payload = summarize_run(store, prior, dendrogram, partition)
    try:
        path = write_json(payload, directory)
        table_path = write_csv(cluster_table(partition), directory)
    except (OSError, ValueError) as exc:
        raise PopBHCCliError(f"Failed to write run summary to '{directory}': {exc}") from exc
    for warning in payload["warnings"]:
        logger.warning(warning)
    print(f"Wrote run summary to {path} and cluster table to {table_path}")


def _write_table(frame: pd.DataFrame, path: Path) -> None:
    path = path.expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if path.suffix.lower() in {".json", ".jsonl", ".ndjson"}:
            frame.to_json(path, orient="records", lines=True)
        else:
            frame.to_csv(path, index=False)
    except OSError as exc:  # pragma: no cover - unlikely in tests
        raise PopBHCCliError(f"Failed to write output to '{path}': {exc}")


def _write_json(data: dict[str, object], path: Path) -> None:
    path = path.expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    try:
        path.write_text(json.dumps(data, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    except OSError as exc:  # pragma: no cover - unlikely in tests
        raise PopBHCCliError(f"Failed to write JSON output to '{path}': {exc}")


def _write_trace(
    records: Iterable[dict[str, object]],
    path: Path,
    *,
    format_hint: str,
) -> None:
    materialised = list(records)
    if not materialised:
        return

    path = path.expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        if format_hint == "csv":
            pd.DataFrame.from_records(materialised).to_csv(path, index=False)
        else:
            with path.open("w", encoding="utf-8") as handle:
                for record in materialised:
                    handle.write(json.dumps(record, sort_keys=True) + "\n")
    except OSError as exc:  # pragma: no cover - unlikely in tests
        raise PopBHCCliError(f"Failed to write trace output to '{path}': {exc}")


if __name__ == "__main__":
    main(sys.argv[1:])
