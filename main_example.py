import time
from crestflow.crestflow_core import CellSimulation
from crestflow.sweep import cell_density, chain_break_fraction

if __name__ == "__main__":
    # --- Configuration for a single replica of the growing-domain experiment ---
    config = {
        'dt': 0.01,
        'final_time': 54.0,
        'final_length': 1014.0,

        'n_leaders': 5,
        'insertion_freq': 1,
        'chemotaxis_threshold': 0.05,
        'persistence_length': 0,

        'chemo_D': 2.0,
        'internalisation_rate': 1.0,
        'internalisation_cutoff': 6.0,   # cells farther than 6 radii add < 1e-7 each

        'save_interval': 100,
        'enable_visualization': True,
    }

    # --- Run Simulation ---
    sim = CellSimulation(config, config_name='main', seed=0)

    start_time = time.time()
    sim.run_simulation()
    end_time = time.time()

    counts = cell_density(sim.positions()[:, 0], sim.domain_length, sim.config['density_bin_width'])
    print(f"\nMain simulation completed in {end_time - start_time:.2f} seconds")
    print(f"Final domain length: {sim.domain_length:.1f}, cells: {len(sim.cells)}")
    print(f"Cells per bin: {counts.tolist()}")
    print(f"Followers outside chains: {chain_break_fraction(sim.cells, len(sim.leader_ids)):.2f}")
    if config['enable_visualization']:
        print("Output saved to 'main_simulation.gif'")
    print(f"Data saved to '{sim.output_dir}/' directory.")
