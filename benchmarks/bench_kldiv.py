#!/usr/bin/env python3
"""Benchmarks for the KL-divergence shard evaluator.

Compares evaluate() timing for dense vs compressed-column V shards at several
densities, with serial and threaded per-shard partials.

Usage:
    python benchmarks/bench_kldiv.py --rows 20000 --cols 500 --rank 32
"""

import argparse
import time
from typing import Dict, List

import torch

from bwmf import FactorContext, KLDivConfig, KLDivLoss, split_rows


def create_shards(
    rows: int,
    cols: int,
    rank: int,
    n_shards: int,
    density: float,
    sparse: bool,
    n_jobs: int,
    seed: int = 0,
) -> KLDivLoss:
    """Create a random evaluator with n_shards equal row shards."""
    gen = torch.Generator().manual_seed(seed)
    v = torch.rand(rows, cols, generator=gen)
    v = v * (torch.rand(rows, cols, generator=gen) < density)
    w = torch.rand(rows, rank, generator=gen)

    base, extra = divmod(rows, n_shards)
    counts = [base + (1 if i < extra else 0) for i in range(n_shards)]
    config = KLDivConfig(m=rows, n=cols, k=rank, n_jobs=n_jobs)
    return KLDivLoss(split_rows(v, counts, sparse=sparse), split_rows(w, counts), config)


def benchmark_evaluate(
    loss_fn: KLDivLoss,
    iterations: int = 20,
    warmup: int = 3,
) -> Dict[str, float]:
    """Benchmark evaluate().

    Returns:
        Dict with 'mean_ms', 'std_ms', 'min_ms', 'max_ms'
    """
    ctx = FactorContext.create(k=loss_fn.k, n=loss_fn.n, fill=1.0)
    for _ in range(warmup):
        ctx.step(loss_fn)

    times = []
    for _ in range(iterations):
        start = time.perf_counter()
        ctx.step(loss_fn)
        end = time.perf_counter()
        times.append((end - start) * 1000)  # Convert to ms

    times = torch.tensor(times)
    return {
        "mean_ms": times.mean().item(),
        "std_ms": times.std().item(),
        "min_ms": times.min().item(),
        "max_ms": times.max().item(),
    }


def run_benchmark_suite(
    rows: int,
    cols: int,
    rank: int,
    n_shards: int,
    densities: List[float],
    jobs: List[int],
    iterations: int,
) -> Dict[str, Dict]:
    """Run dense and sparse configurations for each density and n_jobs."""
    results = {}
    for density in densities:
        for n_jobs in jobs:
            for sparse in (False, True):
                key = f"{'sparse' if sparse else 'dense'}_{density:.2f}_j{n_jobs}"
                loss_fn = create_shards(rows, cols, rank, n_shards, density, sparse, n_jobs)
                results[key] = {
                    "density": density,
                    "sparse": sparse,
                    "n_jobs": n_jobs,
                    "timing": benchmark_evaluate(loss_fn, iterations=iterations),
                }
                print(f"  {key}: {results[key]['timing']['mean_ms']:.3f} ms")
    return results


def print_summary(results: Dict):
    """Print summary table of results."""
    print("\n" + "=" * 60)
    print("BENCHMARK SUMMARY")
    print("=" * 60)

    if not results:
        print("No results to display")
        return

    print(f"{'Layout':<10} {'Density':<10} {'n_jobs':<8} {'Mean (ms)':<12} {'Std (ms)':<10}")
    print("-" * 60)
    for key in sorted(results.keys()):
        r = results[key]
        layout = "sparse" if r["sparse"] else "dense"
        print(
            f"{layout:<10} {r['density']:<10.2f} {r['n_jobs']:<8} "
            f"{r['timing']['mean_ms']:>9.3f}    {r['timing']['std_ms']:>7.3f}"
        )
    print("=" * 60)


def main():
    """Main entry point for benchmarks."""
    parser = argparse.ArgumentParser(description="KL-divergence shard evaluator benchmarks")
    parser.add_argument("--rows", type=int, default=20000, help="Local shard rows (m)")
    parser.add_argument("--cols", type=int, default=500, help="Columns of V and H (n)")
    parser.add_argument("--rank", type=int, default=32, help="Latent rank (k)")
    parser.add_argument("--shards", type=int, default=8, help="Number of row shards")
    parser.add_argument("--iterations", type=int, default=20, help="Benchmark iterations")
    parser.add_argument("--densities", type=float, nargs="+", default=[0.01, 0.1, 0.5],
                        help="Fraction of nonzero V entries")
    parser.add_argument("--jobs", type=int, nargs="+", default=[1, 4],
                        help="n_jobs settings to compare")
    args = parser.parse_args()

    print("KL-divergence Shard Evaluator Benchmarks")
    print("=" * 50)

    results = run_benchmark_suite(
        rows=args.rows,
        cols=args.cols,
        rank=args.rank,
        n_shards=args.shards,
        densities=args.densities,
        jobs=args.jobs,
        iterations=args.iterations,
    )

    print_summary(results)


if __name__ == "__main__":
    main()
