"""Command-line prior predictive simulation.

Simulate visit data from the prior of a model defined in YAML::

    python -m oncomsm --model model.yaml --n-per-group 20 --nsim 10
    python -m oncomsm --model model.yaml --output visits.csv --debug
"""

from __future__ import annotations

import argparse
import logging
import sys

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line argument parser.

    Returns
    -------
    argparse.ArgumentParser
        Configured argument parser.
    """
    parser = argparse.ArgumentParser(
        prog="oncomsm",
        description="Prior predictive simulation of stable-response-progression trials",
    )
    parser.add_argument(
        "--model",
        type=str,
        required=True,
        help="YAML file with a 'groups' mapping of prior hyperparameters.",
    )
    parser.add_argument(
        "--n-per-group",
        type=int,
        default=20,
        help="Subjects per group (default: 20).",
    )
    parser.add_argument(
        "--nsim",
        type=int,
        default=1,
        help="Number of replicate trials (default: 1).",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=42,
        help="Master random seed (default: 42).",
    )
    parser.add_argument(
        "--visit-spacing",
        type=float,
        default=None,
        help="Time between visits (default: from configuration).",
    )
    parser.add_argument(
        "--output",
        type=str,
        default=None,
        help="Write visits to this CSV file instead of standard output.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=False,
        help="Enable debug mode with verbose logging.",
    )
    return parser


def _configure_logging(debug: bool) -> None:
    """Set up root logger.

    Parameters
    ----------
    debug:
        If True, set log level to DEBUG; otherwise INFO.
    """
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> int:
    """Parse arguments, simulate, and write the visit table."""
    from oncomsm.domain.errors import OncomsmError
    from oncomsm.engine.model import format_model, load_model_config
    from oncomsm.engine.sampler import sample_prior
    from oncomsm.engine.simulation import sample_predictive

    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.debug)

    try:
        model = load_model_config(args.model)
        logger.info("Loaded model:\n%s", format_model(model))
        parameters = sample_prior(model, seed=args.seed)
        visits = sample_predictive(
            model,
            parameters,
            n_per_group=args.n_per_group,
            nsim=args.nsim,
            visit_spacing=args.visit_spacing,
            seed=args.seed,
        )
    except (OncomsmError, OSError, ValueError) as exc:
        logger.error("Simulation failed: %s", exc)
        return 1

    if args.output:
        visits.to_csv(args.output, index=False)
        logger.info("Wrote %d visits to %s", len(visits), args.output)
    else:
        visits.to_csv(sys.stdout, index=False)
    return 0


if __name__ == "__main__":
    sys.exit(main())
