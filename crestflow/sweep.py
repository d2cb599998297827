"""
End-of-run statistics and the replica driver.

Every replica is a separate `CellSimulation` with its own seed, so replicas
can run in separate processes and share nothing.
"""
import numpy as np
from multiprocessing import Pool, cpu_count

from crestflow.crestflow_core import CellSimulation, Cell

N_WORKERS = max(1, cpu_count() - 1)


def cell_density(x_positions, domain_length, bin_width=55.0):
    """Number of cells strictly inside each bin of roughly `bin_width` along x."""
    n_bins = int(domain_length / bin_width)
    counts = np.zeros(n_bins, dtype=np.int64)
    if n_bins == 0:
        return counts
    x_positions = np.asarray(x_positions, dtype=np.float64)
    one_part = domain_length / n_bins
    for i in range(n_bins):
        counts[i] = np.count_nonzero((i * one_part < x_positions) & (x_positions < (i + 1) * one_part))
    return counts


def chain_break_fraction(cells, n_leaders):
    """Fraction of followers that are not part of any chain."""
    n_followers = len(cells) - n_leaders
    if n_followers <= 0:
        return 0.0
    loose = sum(1 for cell in cells if cell.type == Cell.FOLLOWER and cell.chain == 0)
    return loose / n_followers


def run_replica(config, seed, steps=None):
    sim = CellSimulation(config, config_name=f"replica_{seed}", seed=seed)
    sim.run_simulation(steps=steps)
    positions = sim.positions()
    return {
        'seed': seed,
        'density': cell_density(positions[:, 0], sim.domain_length, sim.config['density_bin_width']),
        'chain_break': chain_break_fraction(sim.cells, len(sim.leader_ids)),
        'positions': positions,
        'chains': np.array([cell.chain_type if cell.chain > 0 else -1 for cell in sim.cells]),
        'domain_length': sim.domain_length,
    }


def _run_replica_job(job):
    config, seed, steps = job
    return run_replica(config, seed, steps)


def run_replicas(config, seeds, steps=None, processes=None):
    """
    Runs one replica per seed and returns (summed density, per-replica results).
    `processes=1` runs in this process.
    """
    jobs = [(config, seed, steps) for seed in seeds]
    if processes == 1:
        results = [_run_replica_job(job) for job in jobs]
    else:
        with Pool(processes or N_WORKERS) as pool:
            results = pool.map(_run_replica_job, jobs)

    # every replica grows the same domain, so the bins line up
    total = np.sum([result['density'] for result in results], axis=0)
    return total, results


def parameter_sweep(config, name, values, seeds, steps=None, processes=None):
    """Summed density per bin (rows) for each value of parameter `name` (columns)."""
    columns = []
    for value in values:
        total, _ = run_replicas({**config, name: value}, seeds, steps=steps, processes=processes)
        columns.append(total)
    return np.column_stack(columns)


def write_density_csv(filepath, counts):
    """One row per bin, one column per parameter value."""
    counts = np.asarray(counts)
    if counts.ndim == 1:
        counts = counts[:, None]
    np.savetxt(filepath, counts, delimiter=', ', fmt='%g')
    return filepath
