import cProfile
import pstats
from crestflow.crestflow_core import CellSimulation

def profile_simulation():
    """
    Runs a short simulation under the cProfile profiler to find bottlenecks.
    """
    # Dense internalization is the expensive part, so leave pruning off
    config = {
        'insertion_freq': 1,
        'internalisation_cutoff': None,
        'save_data': False,
        'verbose': False,
    }

    # Create the simulation object
    sim = CellSimulation(config, config_name='profile_run')

    # Define the function to profile
    def run_short():
        # First step includes numba compilation; a few hundred show the steady state
        sim.run_simulation(steps=300)

    # --- Run the Profiler ---
    profiler = cProfile.Profile()
    profiler.enable()

    run_short()

    profiler.disable()

    # --- Print the Stats ---
    print("--- Simulation Performance Profile ---")
    # Sort the stats by cumulative time spent in each function
    stats = pstats.Stats(profiler).sort_stats('cumulative')
    stats.print_stats(20) # Print the top 20 most time-consuming functions

if __name__ == "__main__":
    profile_simulation()
