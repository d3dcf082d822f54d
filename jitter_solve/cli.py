"""
Command-line interface for the linescan jitter solver.

Usage:
    jitter-solve config.yaml [--output-prefix PREFIX]
"""

import argparse
import logging
import sys
from pathlib import Path

from .config import Config
from .data_loader import DataLoader, save_cameras, save_points
from .solver import TerminationType, run_jitter_solve


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )


def main(argv=None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description='Refine linescan camera orientation and position samples to reduce jitter',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
    # Solve, writing results with the prefix from the configuration
    jitter-solve config.yaml

    # Solve with a custom output prefix
    jitter-solve config.yaml --output-prefix ./results/run

    # Verbose output
    jitter-solve config.yaml -v
'''
    )

    parser.add_argument(
        'config',
        type=str,
        help='Path to YAML configuration file'
    )

    parser.add_argument(
        '--output-prefix', '-o',
        type=str,
        default=None,
        help='Prefix for output files (default: output_prefix from the configuration)'
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose output'
    )

    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_yaml(args.config)

        # Determine output prefix
        if args.output_prefix:
            output_prefix = args.output_prefix
        elif config.output_prefix:
            output_prefix = config.output_prefix
        else:
            output_prefix = str(Path(args.config).parent / 'jitter_results' / 'run')
        logger.info(f"Output prefix: {output_prefix}")

        loader = DataLoader(config.files)
        loader.load_all()

        summary = run_jitter_solve(
            loader.cameras,
            loader.network,
            solver_options=config.solver,
            outlier_options=config.outliers,
            reference_dem=config.reference_dem,
        )

        # Save results
        save_cameras(loader.cameras, output_prefix)
        save_points(loader.network, f"{output_prefix}-points.csv")

        init, final = summary.initial_residuals, summary.final_residuals

        # Print summary
        print("\n" + "=" * 60)
        print("JITTER SOLVE SUMMARY")
        print("=" * 60)
        print(f"Cameras:                {len(loader.cameras)}")
        print(f"Residual blocks:        {summary.num_residual_blocks}")
        print(f"Parameters:             {summary.num_parameters}")
        print(f"Outlier points:         {summary.num_outliers}")
        print(f"Threads:                {summary.num_threads}")
        print(f"\nCost (robust):")
        print(f"  Initial:              {summary.initial_cost:.6e}")
        print(f"  Final:                {summary.final_cost:.6e}")
        print(f"\nPixel Errors (initial -> final):")
        print(f"  Mean:                 {init.mean_error:.3f} -> {final.mean_error:.3f}")
        print(f"  Median:               {init.median_error:.3f} -> {final.median_error:.3f}")
        print(f"  Max:                  {init.max_error:.3f} -> {final.max_error:.3f}")
        print(f"  RMSE:                 {init.rmse:.3f} -> {final.rmse:.3f}")
        print(f"  Failed projections:   {init.num_failed} -> {final.num_failed}")
        print(f"\nIterations:             {summary.num_iterations}")
        print(f"Termination:            {summary.termination.value}")
        print("=" * 60)

        if summary.termination is TerminationType.FAILURE:
            logger.error(f"Jitter solve FAILED: {summary.message}")
            return 1
        return 0

    except FileNotFoundError as e:
        logger.error(f"File not found: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
