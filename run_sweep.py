import time
import numpy as np
from crestflow.sweep import parameter_sweep, write_density_csv

if __name__ == "__main__":
    # --- Sweep over the chemotactic sensitivity threshold ---
    config = {
        'save_data': False,
        'verbose': False,
        'internalisation_cutoff': 6.0,
    }
    thresholds = [0.05]
    seeds = list(range(4))

    start_time = time.time()
    counts = parameter_sweep(config, 'chemotaxis_threshold', thresholds, seeds)
    end_time = time.time()

    write_density_csv("DensityOfCellsAlongTheDomain.csv", counts)
    print(f"Sweep of {len(thresholds)} value(s) x {len(seeds)} replicas completed "
          f"in {end_time - start_time:.2f} seconds")
    print(f"Total cells counted per value: {np.sum(counts, axis=0).tolist()}")
    print("Output saved to 'DensityOfCellsAlongTheDomain.csv'")
