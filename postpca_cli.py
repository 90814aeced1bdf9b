#!/usr/bin/env python3
# Copyright 2025
# Damien Davison & Michael Maillet & Sacha Davison
# Recursive AI Devs
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at:
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command-line front end for the posterior statistics pipeline.

Archives are ``.npz`` files written by ``postpca_io.ArchiveWriter``; classifier
outputs are matrix archives keyed by utterance, alignments are integer-vector
archives with the same keys.

Usage:
    postpca sparsify-posteriors post.npz sparse.npz --top-n 20
    postpca accumulate-counts sparse.npz counts.npz --counts-dim 3000
    postpca collect-class-samples post.npz ali.npz samples_17.npz --senone 17
    postpca estimate-class-pca samples_17.npz transforms/ --apply-log
    postpca apply-class-transform post.npz ali.npz recon.npz --transforms transforms/ --energy 90
"""

import argparse
import logging
import sys
from contextlib import ExitStack
from pathlib import Path
from typing import List, Optional

from postpca import (
    ConfigError,
    DataError,
    ExhaustionError,
    NumericError,
    PassSummary,
    ReconstructionEngine,
    ReconstructionOptions,
    SparsifyPolicy,
    accumulate_counts,
    accumulate_samples,
    collect_class_samples,
    count_report,
    estimate_class_pca,
    sparse_to_csr,
    sparsify,
)
from postpca_io import (
    Archive,
    ArchiveWriter,
    load_counts,
    load_registry,
    load_symbol_table,
    save_counts,
    save_transform,
    transform_filename,
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def _open(path, *kinds: str) -> Archive:
    """Open an archive, rejecting the wrong kind of records up front."""
    archive = Archive(path)
    if archive.kind not in kinds:
        archive.close()
        raise ConfigError(
            f"{archive.path} holds {archive.kind} records, expected {' or '.join(kinds)}"
        )
    return archive


def _log_summary(summary: PassSummary, what: str) -> None:
    logger.info(
        f"Done {summary.num_done} {what}, skipped {summary.num_skipped}, "
        f"{summary.num_frames} frames in {summary.elapsed / 60:.2f} min "
        f"(fps {summary.frames_per_second:.1f})"
    )


def sparsify_posteriors(args) -> PassSummary:
    policy = SparsifyPolicy.from_options(
        precision=args.precision,
        percentile=args.percentile,
        top_n=args.top_n,
        round_off=args.round_off,
    )
    logger.info(f"Sparsifying with policy {policy.kind.value} ({policy.value})")
    summary = PassSummary()
    with ExitStack() as stack:
        reader = stack.enter_context(_open(args.posteriors, "matrix"))
        writer = stack.enter_context(ArchiveWriter(args.output, "sparse"))
        for key, matrix in reader.items():
            try:
                frames = sparsify(matrix, policy, key=key, apply_exp=args.apply_exp)
            except DataError as err:
                summary.skip(err)
                continue
            writer.write(key, sparse_to_csr(frames, matrix.shape[1]))
            summary.done(len(frames))
    logger.info(f"Done copying {summary.num_done} posteriors.")
    return summary


def accumulate_counts_command(args) -> PassSummary:
    if args.counts_dim < 0:
        raise ConfigError("--counts-dim must be non-negative")
    with ExitStack() as stack:
        reader = stack.enter_context(_open(args.posteriors, "sparse"))
        frame_weights = None
        if args.frame_weights:
            frame_weights = stack.enter_context(_open(args.frame_weights, "vector"))
        utt_weights = None
        if args.utt_weights:
            utt_weights = stack.enter_context(_open(args.utt_weights, "scalar"))
        accumulator, summary = accumulate_counts(
            reader.items(),
            frame_weights=frame_weights,
            utt_weights=utt_weights,
            counts_dim=args.counts_dim,
        )

    counts = accumulator.finalize()
    path = save_counts(args.output, counts)

    if args.symbol_table or args.verbose:
        symbols = load_symbol_table(args.symbol_table) if args.symbol_table else None
        report = count_report(accumulator.counts, symbols)
        logger.info("Printing...\n" + report.format())

    logger.info(f"Counts written to {path}")
    return summary


def collect_class_samples_command(args) -> PassSummary:
    with ExitStack() as stack:
        outputs = stack.enter_context(_open(args.outputs, "matrix"))
        alignments = stack.enter_context(_open(args.alignments, "int_vector"))
        samples, summary = collect_class_samples(
            outputs.items(),
            alignments,
            args.senone,
            data_size=args.data_size,
            correct_class=args.correct_class,
            apply_log=args.apply_log,
            no_softmax=args.no_softmax,
        )
    with ArchiveWriter(args.output, "matrix") as writer:
        writer.write(str(args.senone), samples)
    logger.info(f"Wrote {samples.shape[0]} x {samples.shape[1]} samples to {writer.path}")
    return summary


def estimate_class_pca_command(args) -> PassSummary:
    kind = "vector" if args.read_vectors else "matrix"
    with _open(args.samples, kind) as reader:
        class_id = args.senone_id
        if class_id is None:
            if len(reader) != 1:
                raise ConfigError("--senone-id is required when the input holds more than one key")
            class_id = next(iter(reader))
        accumulator, summary = accumulate_samples(
            reader.items(),
            apply_log=args.apply_log,
            read_vectors=args.read_vectors,
        )
    statistics = accumulator.statistics(None)
    if summary.num_done == 0 or statistics is None:
        raise ExhaustionError("No data accumulated.")

    transform = estimate_class_pca(
        statistics,
        class_id,
        dim=args.dim,
        normalize_variance=args.normalize_variance,
    )
    output = Path(args.output)
    if output.is_dir() or args.output.endswith(("/", "\\")):
        output = output / transform_filename(transform.class_id)
    path = save_transform(output, transform, include_affine=args.normalize_mean)
    logger.info(
        f"Class {transform.class_id}: kept {transform.num_stored} of {transform.dimension} "
        f"components; transform written to {path}"
    )
    return summary


def apply_class_transform_command(args) -> PassSummary:
    options = ReconstructionOptions(
        energy=args.energy,
        apply_log=args.apply_log,
        no_softmax=args.no_softmax,
        apply_exp=args.apply_exp,
        prior_scale=args.prior_scale,
        prior_floor=args.prior_floor,
    )
    if args.class_frame_counts and not options.log_domain:
        raise ConfigError("--class-frame-counts has to be used together with --no-softmax or --apply-log")

    registry = load_registry(args.transforms)
    if args.class_frame_counts:
        engine = ReconstructionEngine.with_prior_counts(
            registry, load_counts(args.class_frame_counts), options
        )
    else:
        engine = ReconstructionEngine(registry, options)

    summary = PassSummary()
    with ExitStack() as stack:
        outputs = stack.enter_context(_open(args.outputs, "matrix"))
        alignments = stack.enter_context(_open(args.alignments, "int_vector"))
        writer = stack.enter_context(ArchiveWriter(args.output, "matrix"))
        for key, matrix in outputs.items():
            logger.debug(f"Processing utterance {summary.num_done + 1}, {key}, {matrix.shape[0]} frm")
            try:
                if key not in alignments:
                    raise DataError("Alignment not found", key)
                reconstructed = engine.reconstruct_utterance(matrix, alignments[key], key=key)
            except DataError as err:
                summary.skip(err)
                continue
            writer.write(key, reconstructed)
            summary.done(matrix.shape[0])
            summary.progress()

    _log_summary(summary, "files")
    logger.info(
        f"Reconstructed {engine.num_reconstructed} frames, "
        f"{engine.num_fallback} frames fell back to the aligned label"
    )
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="postpca",
        description="Per-class posterior compression and statistics",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log per-utterance progress and the count table",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sp = commands.add_parser(
        "sparsify-posteriors",
        help="Truncate dense posteriors to a sparse form",
        description=(
            "Convert classifier outputs to sparse posteriors. For rounding off the probabilities, "
            "one of --precision, --percentile and --top-n is used (default --precision 2)."
        ),
    )
    sp.add_argument("posteriors", help="Matrix archive of dense posteriors")
    sp.add_argument("output", help="Sparse posterior archive to write")
    sp.add_argument("--precision", type=int, default=None,
                    help="Keep N places after the decimal point")
    sp.add_argument("--percentile", type=int, default=None,
                    help="Keep the top classes holding N percent of each frame's mass")
    sp.add_argument("--top-n", "--topN", dest="top_n", type=int, default=None,
                    help="Keep the N most probable classes of each frame")
    sp.add_argument("--round-off", action=argparse.BooleanOptionalAction, default=True,
                    help="Disable to copy posteriors as they are (large output)")
    sp.add_argument("--apply-exp", action="store_true",
                    help="Inputs are log-posteriors; exponentiate first")
    sp.set_defaults(handler=sparsify_posteriors)

    ac = commands.add_parser(
        "accumulate-counts",
        help="Sum sparse posteriors into smoothed class counts",
    )
    ac.add_argument("posteriors", help="Sparse posterior archive")
    ac.add_argument("output", help="Count vector file to write")
    ac.add_argument("--frame-weights", default=None,
                    help="Vector archive of per-frame weights")
    ac.add_argument("--utt-weights", default=None,
                    help="Scalar archive of per-utterance weights")
    ac.add_argument("--counts-dim", type=int, default=0,
                    help="Output dimension of the counts, a hint for dimension auto-detection")
    ac.add_argument("--symbol-table", default=None,
                    help="'name id' text file used to label the count table")
    ac.set_defaults(handler=accumulate_counts_command)

    cs = commands.add_parser(
        "collect-class-samples",
        help="Collect classifier outputs aligned to one class",
    )
    cs.add_argument("outputs", help="Matrix archive of classifier outputs")
    cs.add_argument("alignments", help="Integer-vector archive of frame labels")
    cs.add_argument("output", help="Matrix archive to write (keyed by class id)")
    cs.add_argument("--data-size", "--dataSize", dest="data_size", type=int, default=5000,
                    help="Maximum number of frames to collect (default: 5000)")
    cs.add_argument("--senone", type=int, default=0,
                    help="Class id (indexed from 0) whose frames are collected")
    cs.add_argument("--correct-class", action=argparse.BooleanOptionalAction, default=True,
                    help="Only keep frames whose arg-max is the class")
    cs.add_argument("--no-softmax", action="store_true",
                    help="Outputs are pre-softmax activations")
    cs.add_argument("--apply-log", action="store_true",
                    help="Transform the collected frames to log scale")
    cs.set_defaults(handler=collect_class_samples_command)

    ep = commands.add_parser(
        "estimate-class-pca",
        help="Estimate a class PCA transform, mean and energy table",
    )
    ep.add_argument("samples", help="Matrix (or vector) archive of class samples")
    ep.add_argument("output", help="Transform file, or directory to place class_<id>.npz in")
    ep.add_argument("--senone-id", default=None,
                    help="Class id the transform is stored under (default: the single input key)")
    ep.add_argument("--apply-log", action="store_true",
                    help="Transform input data to log scale")
    ep.add_argument("--normalize-variance", action="store_true",
                    help="Scale components to unit variance")
    ep.add_argument("--normalize-mean", action="store_true",
                    help="Also store the affine transform that subtracts the mean")
    ep.add_argument("--dim", type=int, default=-1,
                    help="Cap on stored components (<= 0 keeps the 99th percentile point)")
    ep.add_argument("--read-vectors", action="store_true",
                    help="Read single vectors instead of matrices")
    ep.set_defaults(handler=estimate_class_pca_command)

    ap = commands.add_parser(
        "apply-class-transform",
        help="Reconstruct posteriors through their class transforms",
    )
    ap.add_argument("outputs", help="Matrix archive of classifier outputs")
    ap.add_argument("alignments", help="Integer-vector archive of frame labels")
    ap.add_argument("output", help="Matrix archive of reconstructed posteriors")
    ap.add_argument("--transforms", nargs="+", required=True,
                    help="Transform files or directories holding them")
    ap.add_argument("--energy", type=int, default=100,
                    help="Percentile of variance kept during reconstruction (default: 100)")
    ap.add_argument("--apply-log", action=argparse.BooleanOptionalAction, default=True,
                    help="Transform classifier outputs to log scale")
    ap.add_argument("--apply-exp", action=argparse.BooleanOptionalAction, default=True,
                    help="Transform reconstructions back to posteriors")
    ap.add_argument("--no-softmax", action="store_true",
                    help="Outputs are pre-softmax activations")
    ap.add_argument("--class-frame-counts", default=None,
                    help="Count vector used to turn log-posteriors into quasi-likelihoods")
    ap.add_argument("--prior-scale", type=float, default=1.0,
                    help="Scale on the subtracted log-priors")
    ap.add_argument("--prior-floor", type=float, default=1e-10,
                    help="Classes with priors below this are suppressed")
    ap.set_defaults(handler=apply_class_transform_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point; returns the process exit status."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )

    try:
        summary = args.handler(args)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 2
    except (NumericError, ExhaustionError) as e:
        logger.error(f"{args.command} aborted: {e}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        return 1

    if summary.num_done == 0:
        logger.error(f"{args.command}: no items processed")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
