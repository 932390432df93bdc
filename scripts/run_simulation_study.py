"""
Simulation Study: Poolwise Estimators Under Exposure Error
==========================================================

Runs a Monte Carlo study for one model family:
1. Simulates pooled case-control data with known parameters
2. Fits the poolwise model under the chosen error regime
3. Summarizes bias, RMSE and CI coverage per sample size
4. Optionally compares against a naive fit that ignores the errors

Results are written as CSV files under the output directory.

Usage:
    python scripts/run_simulation_study.py --family logistic --sigsq-p 0.5
    python scripts/run_simulation_study.py --family gdfa --compare --replications 50
"""

import argparse
import logging
import os
import sys
from pathlib import Path

# =============================================================================
# PROJECT ROOT SETUP
# =============================================================================
PROJECT_ROOT = Path(__file__).resolve().parent.parent
os.chdir(PROJECT_ROOT)
sys.path.insert(0, str(PROJECT_ROOT / 'src'))

from poolreg.simulation.simulate_pools import GammaSimulationConfig, LogisticSimulationConfig
from poolreg.utils.logging_config import configure_warnings, setup_logging
from poolreg.validation.monte_carlo import run_error_model_comparison, run_parameter_recovery


def build_simulation_config(args):
    if args.family == 'logistic':
        return LogisticSimulationConfig(
            beta_x=args.effect,
            sigsq_p1=args.sigsq_p,
            sigsq_m1=args.sigsq_m,
            replicate_fraction=args.replicate_fraction,
            seed=args.seed,
        )
    return GammaSimulationConfig(
        sigsq_p=args.sigsq_p,
        sigsq_m=args.sigsq_m,
        replicate_fraction=args.replicate_fraction,
        seed=args.seed,
    )


def run_study(args):
    output_path = Path(args.output)
    output_path.mkdir(parents=True, exist_ok=True)

    print("=" * 80)
    print(f"SIMULATION STUDY: {args.family} family, errors={args.errors!r}")
    print("=" * 80)

    simulation_config = build_simulation_config(args)
    print(f"\nData generating process: {simulation_config}")
    print(f"Replications: {args.replications}, sample sizes: {args.sample_sizes}")

    if args.compare:
        table = run_error_model_comparison(
            family=args.family,
            simulation_config=simulation_config,
            corrected_errors=args.errors,
            parameters=args.parameters,
            n_replications=args.replications,
            sample_sizes=args.sample_sizes,
            seed=args.seed,
        )
        filename = 'error_model_comparison.csv'
    else:
        result = run_parameter_recovery(
            family=args.family,
            errors=args.errors,
            simulation_config=simulation_config,
            parameters=args.parameters,
            n_replications=args.replications,
            sample_sizes=args.sample_sizes,
            seed=args.seed,
            n_workers=args.workers,
        )
        table = result.summary_table()
        filename = 'parameter_recovery.csv'
        print(f"\nTotal time: {result.total_time:.1f}s ({result.time_per_rep:.2f}s per replication)")

    print("\n" + "=" * 80)
    print("SUMMARY")
    print("=" * 80)
    print(table.to_string(index=False, float_format=lambda v: f"{v:.4f}"))

    table.to_csv(output_path / filename, index=False)
    print(f"\nResults saved to: {output_path / filename}")

    return table


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    parser = argparse.ArgumentParser(description='Monte Carlo study of the poolwise estimators')
    parser.add_argument('--family', type=str, choices=['logistic', 'gdfa'], default='logistic',
                        help='Model family (default: logistic)')
    parser.add_argument('--errors', type=str, default='processing',
                        choices=['neither', 'processing', 'measurement', 'both'],
                        help='Error regime assumed by the fitted model')
    parser.add_argument('--sigsq-p', type=float, default=0.5,
                        help='True processing error variance')
    parser.add_argument('--sigsq-m', type=float, default=0.0,
                        help='True measurement error variance')
    parser.add_argument('--replicate-fraction', type=float, default=0.0,
                        help='Fraction of pools measured in replicate')
    parser.add_argument('--effect', type=float, default=0.5,
                        help='True exposure log-odds ratio (logistic family)')
    parser.add_argument('--parameters', type=str, nargs='+', default=None,
                        help='Parameters to summarize (default: exposure effect)')
    parser.add_argument('--replications', type=int, default=100,
                        help='Replications per sample size (default: 100)')
    parser.add_argument('--sample-sizes', type=int, nargs='+', default=[50, 100],
                        help='Case (and control) pools per pool size')
    parser.add_argument('--workers', type=int, default=1,
                        help='Parallel worker processes')
    parser.add_argument('--seed', type=int, default=42, help='Base random seed')
    parser.add_argument('--compare', action='store_true',
                        help='Also fit a naive model that ignores exposure errors')
    parser.add_argument('--output', type=str, default='results/simulation',
                        help='Output directory')

    args = parser.parse_args()

    setup_logging(level=logging.WARNING)
    configure_warnings()
    run_study(args)
