import numpy as np
import os
from numba import njit, prange
import matplotlib.pyplot as plt
import imageio.v2 as imageio

from crestflow.neighbour_search import NeighbourSearch

# --- Default Parameters ---
# Times are in hours and lengths in microns, one grid unit per micron.
DEFAULT_CONFIG = {
    # --- Simulation Control ---
    'initial_setup_type': 'leaders_at_entrance',
    'dt': 0.01,
    'final_time': 54.0,
    'save_interval': 100,
    'save_data': True,
    'enable_visualization': False,
    'verbose': True,

    # --- Domain and Grid ---
    'space_grid_controller': 100.0,
    'domain_length': 3.42,
    'domain_height': 1.2,
    'dx': 1.0,
    'dy': 1.0,
    'final_length': 1014.0,

    # --- Domain Growth ---
    'n_faster': 2.0,
    'faster_fraction': 1.0,
    'first_part_grows': True,

    # --- Chemoattractant ---
    'chemo_D': 2.0,
    'k_reac': 1.0,
    'internalisation_rate': 1.0,
    'initial_concentration': 1.0,
    'clamp_negative': True,
    'internalisation_cutoff': None,

    # --- Cells ---
    'n_leaders': 5,
    'cell_radius': 7.5,
    'sensing_radius': 27.5,
    'attach_radius': 27.5,
    'chain_radius': 27.5,
    'detach_distance': 45.0,
    'leader_speed': 0.14,
    'follower_speed_factor': 1.3,
    'swap_margin': 1.0,
    'filo_number': 3,
    'persistence_length': 0,
    'random_persistence': True,
    'chemotaxis_threshold': 0.05,
    'insertion_freq': 1,

    # --- Policies ---
    'index_refresh': 'per_step',
    'swap_mode': 'positions',
    'density_bin_width': 55.0,
}

INDEX_REFRESH_POLICIES = ('per_step', 'per_commit')
SWAP_MODES = ('positions', 'off')


# --- Domain Growth ---

def growth_exponents(length_x, final_length, final_time, n_faster, theta, first_part_grows=True):
    """
    Exponents (alpha1, alpha2) of the two strain segments such that the domain
    reaches `final_length` at `final_time`, with the faster segment stretching
    `n_faster` times more than the other one.
    """
    if first_part_grows:
        xvar = final_length / (n_faster * length_x * theta + length_x * (1.0 - theta))
        ratio1, ratio2 = n_faster * xvar, xvar
    else:
        xvar = final_length / (length_x * theta + n_faster * length_x * (1.0 - theta))
        ratio1, ratio2 = xvar, n_faster * xvar
    return np.log(ratio1) / final_time, np.log(ratio2) / final_time


def strain_rate_profile(length_x, theta, alpha1, alpha2):
    """Piecewise constant strain rate: alpha1 on the first theta of the columns."""
    strain = np.full(length_x, alpha2, dtype=np.float64)
    strain[:int(theta * length_x)] = alpha1
    return strain


def growth_multiplier(strain, t):
    return np.exp(t * strain)


def integrate_growth_map(gamma_x, dx):
    """Forward sum of the multiplier along x. Column 0 is pinned at 0."""
    gamma = np.zeros_like(gamma_x, dtype=np.float64)
    gamma[1:] = np.cumsum(gamma_x[1:] * dx)
    return gamma


def growth_rate(gamma, gamma_old, dt):
    return (gamma - gamma_old) / dt


def segment_index(gamma_old, x):
    """Largest column j with gamma_old[j] <= x, clamped to the grid."""
    j = int(np.searchsorted(gamma_old, x, side='right')) - 1
    return min(max(j, 0), len(gamma_old) - 1)


def stable_timestep(D, dx, dy, gamma_x_min=1.0):
    """Largest forward Euler step for which the diffusion stencil stays stable."""
    if D <= 0:
        return np.inf
    return 1.0 / (2.0 * D * (1.0 / (dx * dx * gamma_x_min * gamma_x_min) + 1.0 / (dy * dy)))


# --- Numba-optimized Helper Functions ---

@njit(parallel=True)
def update_chemoattractant_numba(chemo, intern, gamma_x, strain, D, k_reac, lam,
                                 cell_radius, dt, dx, dy, clamp_negative):
    """
    One explicit step of diffusion on the stretched grid, uptake by cells,
    logistic production and dilution by growth. Edges copy their interior
    neighbour (no flux).
    """
    nx, ny = chemo.shape
    new_chemo = np.copy(chemo)
    uptake = lam / (2.0 * np.pi * cell_radius * cell_radius)
    for i in prange(1, nx - 1):
        inv_here = 1.0 / gamma_x[i]
        inv_right = 1.0 / gamma_x[i + 1]
        inv_left = 1.0 / gamma_x[i - 1]
        coeff_x = D / (2.0 * dx * dx * gamma_x[i])
        for j in range(1, ny - 1):
            c = chemo[i, j]
            diffusion_x = coeff_x * ((inv_here + inv_right) * (chemo[i + 1, j] - c) -
                                     (inv_here + inv_left) * (c - chemo[i - 1, j]))
            diffusion_y = D * (chemo[i, j + 1] - 2.0 * c + chemo[i, j - 1]) / (dy * dy)
            value = c + dt * (diffusion_x + diffusion_y
                              - c * uptake * intern[i, j]
                              + k_reac * c * (1.0 - c)
                              - strain[i] * c)
            if clamp_negative and value < 0:
                value = 0.0
            new_chemo[i, j] = value

    for j in range(ny):
        new_chemo[0, j] = new_chemo[1, j]
        new_chemo[nx - 1, j] = new_chemo[nx - 2, j]
    for i in range(nx):
        new_chemo[i, 0] = new_chemo[i, 1]
        new_chemo[i, ny - 1] = new_chemo[i, ny - 2]
    return new_chemo


@njit(parallel=True)
def internalisation_numba(gamma, positions, cell_radius, ny, cutoff):
    """
    Gaussian proximity of every grid point to every cell, x measured on the
    growth map and y on the raw grid. A positive `cutoff` skips cells farther
    than that distance from a grid point.
    """
    nx = gamma.shape[0]
    n_cells = positions.shape[0]
    intern = np.zeros((nx, ny))
    two_r2 = 2.0 * cell_radius * cell_radius
    for i in prange(nx):
        for k in range(n_cells):
            ddx = gamma[i] - positions[k, 0]
            if cutoff > 0:
                if abs(ddx) > cutoff:
                    continue
                j_min = max(0, int(np.ceil(positions[k, 1] - cutoff)))
                j_max = min(ny, int(np.floor(positions[k, 1] + cutoff)) + 1)
            else:
                j_min = 0
                j_max = ny
            for j in range(j_min, j_max):
                ddy = j - positions[k, 1]
                intern[i, j] += np.exp(-(ddx * ddx + ddy * ddy) / two_r2)
    return intern


def round_half_up(value):
    return int(np.floor(value + 0.5))


def sample_probes(chemo, column, y, angles, reach_x, reach_y):
    """Concentration at the tip of each filopodium; tips off the grid read 0."""
    nx, ny = chemo.shape
    values = np.zeros(len(angles))
    for k, angle in enumerate(angles):
        i = round_half_up(column + np.sin(angle) * reach_x)
        j = round_half_up(y + np.cos(angle) * reach_y)
        if 0 <= i < nx and 0 <= j < ny:
            values[k] = chemo[i, j]
    return values


def make_generators(seed):
    """Independent generators for sweep order, angles and insertion."""
    return tuple(np.random.default_rng(s) for s in np.random.SeedSequence(seed).spawn(3))


# --- Cell Definition ---
class Cell:
    LEADER = 0
    FOLLOWER = 1

    def __init__(self, cell_id, position, radius, cell_type):
        self.id = cell_id
        self.position = np.array(position, dtype=np.float64)
        self.radius = radius
        self.type = cell_type
        self.direction = np.zeros(2)
        self.chain = 0
        self.chain_type = -1
        self.attached_to_id = -1
        self.persistence_extent = 0
        self.same_dir_step = 0
        self.scaling = 0

    @property
    def is_leader(self):
        return self.type == Cell.LEADER

    def detach(self):
        self.chain = 0


# --- Modular Initializer Functions ---
def setup_leaders_at_entrance(config, length_x, length_y):
    """Leaders lined up at the entrance, evenly spread in y, on a uniform field."""
    concentration = np.ones((length_x, length_y)) * config['initial_concentration']
    n = config['n_leaders']
    spacing = (length_y - 1) / n
    positions = [(config['cell_radius'], (i + 1) * spacing - 0.5 * spacing) for i in range(n)]
    return positions, concentration


def setup_empty(config, length_x, length_y):
    """No cells; useful for placing cells by hand."""
    concentration = np.ones((length_x, length_y)) * config['initial_concentration']
    return [], concentration


INITIALIZER_MAP = {
    'leaders_at_entrance': setup_leaders_at_entrance,
    'empty': setup_empty,
}


class CellSimulation:
    def __init__(self, config, config_name='main', seed=0, rngs=None):
        self.config_name = config_name
        self.config = {**DEFAULT_CONFIG, **config}
        self.seed = seed
        config = self.config
        self.verbose = config['verbose']

        self.length_x = int(round(config['domain_length'] * config['space_grid_controller']))
        self.length_y = int(round(config['domain_height'] * config['space_grid_controller']))
        self.dx = config['dx']
        self.dy = config['dy']
        self.dt = config['dt']
        self.n_steps = int(round(config['final_time'] / self.dt))

        self.chemo_D = config['chemo_D']
        self.k_reac = config['k_reac']
        self.lam = config['internalisation_rate']

        self.cell_radius = config['cell_radius']
        self.diameter = 2.0 * self.cell_radius
        self.sensing_radius = config['sensing_radius']
        self.attach_radius = config['attach_radius']
        self.chain_radius = config['chain_radius']
        self.detach_distance = config['detach_distance']
        self.speed_l = config['leader_speed']
        self.follower_speed_factor = config['follower_speed_factor']
        self.speed_f = self.follower_speed_factor * self.speed_l
        self.swap_margin = config['swap_margin']
        self.filo_number = config['filo_number']
        self.persistence_length = config['persistence_length']
        self.random_persistence = config['random_persistence']
        self.chemotaxis_threshold = config['chemotaxis_threshold']
        self.insertion_freq = config['insertion_freq']

        self.index_refresh = config['index_refresh']
        if self.index_refresh not in INDEX_REFRESH_POLICIES:
            raise ValueError(f"Unknown index_refresh: '{self.index_refresh}'. "
                             f"Available options are: {list(INDEX_REFRESH_POLICIES)}")
        self.swap_mode = config['swap_mode']
        if self.swap_mode not in SWAP_MODES:
            raise ValueError(f"Unknown swap_mode: '{self.swap_mode}'. "
                             f"Available options are: {list(SWAP_MODES)}")

        cutoff = config['internalisation_cutoff']
        self.internalisation_cutoff = -1.0 if cutoff is None else cutoff * self.cell_radius

        # --- DOMAIN GROWTH ---
        self.alpha1, self.alpha2 = growth_exponents(
            self.length_x, config['final_length'], config['final_time'],
            config['n_faster'], config['faster_fraction'], config['first_part_grows'])
        self.strain = strain_rate_profile(self.length_x, config['faster_fraction'], self.alpha1, self.alpha2)
        self.gamma_x = np.ones(self.length_x)
        self.gamma = np.arange(self.length_x, dtype=np.float64) * self.dx
        self.gamma_old = self.gamma.copy()
        self.gamma_t = np.zeros(self.length_x)
        self.t = 0.0
        self.step_count = 0

        max_dt = stable_timestep(self.chemo_D, self.dx, self.dy)
        if self.dt > max_dt:
            print(f"WARNING: dt={self.dt} exceeds the explicit stability limit {max_dt:.4g}; "
                  "the chemoattractant field may oscillate or blow up.")

        if rngs is None:
            rngs = make_generators(seed)
        self.rng_sweep, self.rng_angles, self.rng_insertion = rngs

        extent = 5.0 * np.array([max(self.length_x * self.dx, config['final_length']), self.length_y])
        self.neighbours = NeighbourSearch((0.0, 0.0), extent)

        # --- MODULAR INITIALIZATION ---
        setup_type = config['initial_setup_type']
        initializer_func = INITIALIZER_MAP.get(setup_type)
        if not initializer_func:
            raise ValueError(f"Unknown initial_setup_type: '{setup_type}'. "
                             f"Available options are: {list(INITIALIZER_MAP.keys())}")

        self.cells = []
        self.leader_ids = []
        leader_positions, self.concentration = initializer_func(config, self.length_x, self.length_y)
        for position in leader_positions:
            self.add_cell(position, Cell.LEADER)
        self.internalisation = np.zeros((self.length_x, self.length_y))

        self.frames = []
        self.output_dir = config.get('output_dir', f"simulation_data_{self.config_name}")

        if self.verbose:
            print(f"INFO: Grid {self.length_x}x{self.length_y}, strain exponents "
                  f"{self.alpha1:.4f}/{self.alpha2:.4f}, seed {self.seed}.")

    # --- Cell store ---
    def add_cell(self, position, cell_type):
        """Appends a cell; ids are dense, so a cell's id is also its slot."""
        cell = Cell(len(self.cells), position, self.cell_radius, cell_type)
        self.cells.append(cell)
        if cell.is_leader:
            self.leader_ids.append(cell.id)
        self.neighbours.refresh(self.positions())
        return cell

    def positions(self):
        return np.array([cell.position for cell in self.cells], dtype=np.float64).reshape(-1, 2)

    @property
    def domain_length(self):
        return self.gamma[-1]

    # --- A single, correctly ordered simulation step ---
    def _simulation_step(self):
        if self.insertion_freq > 0 and self.step_count % self.insertion_freq == 0:
            self._insert_follower()

        self.step_count += 1
        self.t = self.step_count * self.dt
        self._grow_domain()
        self._reposition_cells()
        self.neighbours.refresh(self.positions())

        self._update_chemoattractant()
        self._move_cells()
        self.neighbours.refresh(self.positions())

    def _insert_follower(self):
        y = self.rng_insertion.uniform(self.cell_radius, self.length_y - 1 - self.cell_radius)
        position = np.array([self.cell_radius, y])
        if not self.neighbours.is_free(position, self.diameter):
            return None
        cell = self.add_cell(position, Cell.FOLLOWER)
        return cell

    def _grow_domain(self):
        self.gamma_x = growth_multiplier(self.strain, self.t)
        self.gamma = integrate_growth_map(self.gamma_x, self.dx)
        self.gamma_t = growth_rate(self.gamma, self.gamma_old, self.dt)

    def _reposition_cells(self):
        for cell in self.cells:
            value = segment_index(self.gamma_old, cell.position[0])
            cell.scaling = value
            cell.position[0] += self.gamma[value] - self.gamma_old[value]
        self.gamma_old = self.gamma.copy()

    def _update_chemoattractant(self):
        self.internalisation = internalisation_numba(
            self.gamma, self.positions(), self.cell_radius, self.length_y, self.internalisation_cutoff)
        self.concentration = update_chemoattractant_numba(
            self.concentration, self.internalisation, self.gamma_x, self.strain,
            self.chemo_D, self.k_reac, self.lam, self.cell_radius,
            self.dt, self.dx, self.dy, self.config['clamp_negative'])

    # --- Movement ---
    def _move_cells(self):
        order = self.rng_sweep.permutation(len(self.cells))
        for idx in order:
            cell = self.cells[idx]
            if cell.is_leader:
                self._move_leader(cell)
            else:
                self._move_follower(cell)
                if self.swap_mode == 'positions':
                    self._phenotype_swap(cell)

    def _in_bounds(self, position):
        r = self.cell_radius
        return (r <= position[0] <= self.gamma[-1] - r and
                r <= position[1] <= self.length_y - 1 - r)

    def _commit(self, cell, position):
        cell.position = position
        if self.index_refresh == 'per_commit':
            self.neighbours.update(cell.id, position)

    def _try_move(self, cell, displacement):
        """Moves the cell unless the target is off the domain or occupied."""
        target = cell.position + displacement
        if not self._in_bounds(target):
            return False
        if not self.neighbours.is_free(target, self.diameter, exclude=cell.id):
            return False
        self._commit(cell, target)
        return True

    def _local_scale(self, column):
        """Grid columns per unit of physical length around `column`."""
        if column > 0:
            return column / self.gamma[column]
        return 1.0 / (self.gamma_x[0] * self.dx)

    def _move_leader(self, cell):
        if cell.persistence_extent == 1:
            self._try_move(cell, cell.direction)
            cell.same_dir_step += 1
        else:
            self._sense_and_move(cell)

        if cell.same_dir_step > self.persistence_length:
            cell.persistence_extent = 0
            cell.same_dir_step = 0

    def _sense_and_move(self, cell):
        # last angle is kept for the random step
        angles = self.rng_angles.uniform(0.0, 2.0 * np.pi, size=self.filo_number + 1)
        column = cell.scaling
        current = self.concentration[column, round_half_up(cell.position[1])]
        reach_x = self.sensing_radius * self._local_scale(column)
        probes = sample_probes(self.concentration, column, cell.position[1],
                               angles[:-1], reach_x, self.sensing_radius)
        best = int(np.argmax(probes))

        # a non-positive concentration makes the ratio undefined; walk randomly instead
        if current > 0 and (probes[best] - current) / np.sqrt(current) > self.chemotaxis_threshold:
            angle = angles[best]
            persist = self.persistence_length > 0
        else:
            angle = angles[-1]
            persist = self.random_persistence and self.persistence_length > 0

        step = self.speed_l * np.array([np.sin(angle), np.cos(angle)])
        if self._try_move(cell, step):
            cell.direction = step
            if persist:
                cell.persistence_extent = 1

    def _move_follower(self, cell):
        if cell.chain > 0:
            ahead = self.cells[cell.attached_to_id]
            if np.linalg.norm(cell.position - ahead.position) > self.detach_distance:
                self._dissolve_chain(cell)
                return
            self._follow_chain(cell)
            return

        self._attach(cell)
        if cell.chain > 0:
            self._follow_chain(cell)
            return

        angle = self.rng_angles.uniform(0.0, 2.0 * np.pi)
        step = self.speed_f * np.array([np.sin(angle), np.cos(angle)])
        if self._try_move(cell, step):
            cell.direction = step

    def _follow_chain(self, cell):
        ahead = self.cells[cell.attached_to_id]
        cell.direction = ahead.direction.copy()
        self._try_move(cell, self.follower_speed_factor * cell.direction)

    def _dissolve_chain(self, cell):
        cell.detach()
        for other in self.cells:
            if other.chain_type == cell.chain_type:
                other.detach()

    def _nearest(self, point, radius, accept):
        indices, offsets = self.neighbours.query(point, radius)
        distances = np.hypot(offsets[:, 0], offsets[:, 1])
        for k in np.argsort(distances, kind='stable'):
            other = self.cells[indices[k]]
            if accept(other):
                return other
        return None

    def _leads_back_to(self, start, target):
        """True if following attachments from `start` reaches `target`."""
        seen = set()
        current = start
        while not current.is_leader and current.chain > 0:
            if current.id == target.id or current.id in seen:
                return True
            seen.add(current.id)
            current = self.cells[current.attached_to_id]
        return current.id == target.id

    def _attach(self, cell):
        leader = self._nearest(cell.position, self.attach_radius, lambda other: other.is_leader)
        if leader is not None:
            cell.chain = 1
            cell.chain_type = leader.id
            cell.attached_to_id = leader.id
            cell.direction = leader.direction.copy()
            return

        def chained_follower(other):
            return (other.id != cell.id and not other.is_leader and other.chain > 0
                    and not self._leads_back_to(other, cell))

        ahead = self._nearest(cell.position, self.chain_radius, chained_follower)
        if ahead is not None:
            cell.chain = ahead.chain + 1
            cell.chain_type = ahead.chain_type
            cell.attached_to_id = ahead.id
            cell.direction = ahead.direction.copy()

    def _phenotype_swap(self, cell):
        """A follower that overtook its nearest leader trades places with it."""
        if not self.leader_ids:
            return
        leaders = [self.cells[i] for i in self.leader_ids]
        min_leader = min(leaders, key=lambda c: c.position[0])
        if cell.position[0] <= min_leader.position[0] + self.swap_margin:
            return
        nearest = min(leaders, key=lambda c: np.linalg.norm(cell.position - c.position))
        if cell.position[0] > nearest.position[0] + self.swap_margin:
            follower_position = cell.position
            self._commit(cell, nearest.position)
            self._commit(nearest, follower_position)

    # --- Run loop ---
    def run_simulation(self, steps=None, save_interval=None):
        steps = self.n_steps if steps is None else steps
        save_interval = self.config['save_interval'] if save_interval is None else save_interval
        if self.verbose:
            print(f"Starting simulation '{self.config_name}' for {steps} steps.")
        for _ in range(steps):
            self._simulation_step()

            if save_interval and self.step_count % save_interval == 0:
                if self.config['enable_visualization']:
                    self._save_frame()
                if self.config['save_data']:
                    self._save_concentration_csv()
                    self._save_data_npz()

            if self.verbose:
                print(f"\rStep {self.step_count}/{steps}, Cells: {len(self.cells)}", end="")
        if self.verbose:
            print("\nSimulation finished.")

        if self.config['enable_visualization'] and self.frames:
            if self.verbose:
                print("Creating GIF...")
            self._create_gif()

    # --- Output ---
    def concentration_table(self):
        """Rows of (x, y, z, u), x from the growth map, z always 0."""
        xs = np.repeat(self.gamma, self.length_y)
        ys = np.tile(np.arange(self.length_y, dtype=np.float64), self.length_x)
        return np.column_stack([xs, ys, np.zeros_like(xs), self.concentration.ravel()])

    def _save_concentration_csv(self):
        os.makedirs(self.output_dir, exist_ok=True)
        filepath = os.path.join(self.output_dir, f"ChemoConc{int(self.t)}.csv")
        np.savetxt(filepath, self.concentration_table(), delimiter=', ',
                   header='x, y, z, u', comments='')
        return filepath

    def _save_frame(self):
        os.makedirs(self.output_dir, exist_ok=True)
        fig, ax = plt.subplots(figsize=(10, 4))
        ax.pcolormesh(self.gamma, np.arange(self.length_y), self.concentration.T,
                      cmap='viridis', shading='auto')

        for cell in self.cells:
            color = 'red' if cell.is_leader else ('white' if cell.chain > 0 else 'grey')
            ax.add_artist(plt.Circle(cell.position, cell.radius, color=color, alpha=0.7))
            ax.add_artist(plt.Circle(cell.position, cell.radius, color='black', fill=False, lw=1))

        ax.set_title(f't = {self.t:.2f}, Cells: {len(self.cells)}')
        ax.set_xlim(0, self.gamma[-1])
        ax.set_ylim(0, self.length_y - 1)
        ax.set_aspect('equal')

        filepath = os.path.join(self.output_dir, f'frame_{self.step_count:05d}.png')
        plt.savefig(filepath)
        plt.close(fig)
        self.frames.append(filepath)

    def _create_gif(self):
        with imageio.get_writer(f"{self.config_name}_simulation.gif", mode='I', duration=0.1) as writer:
            for filename in self.frames:
                writer.append_data(imageio.imread(filename))
        for filename in self.frames:
            os.remove(filename)
        self.frames = []

    def _save_data_npz(self):
        """Saves cell state and the field at the current step to a compressed NPZ file."""
        os.makedirs(self.output_dir, exist_ok=True)
        filepath = os.path.join(self.output_dir, f'{self.config_name}_data_{self.step_count:05d}.npz')
        np.savez_compressed(
            filepath,
            step=self.step_count,
            t=self.t,
            cell_ids=np.array([cell.id for cell in self.cells], dtype=np.int64),
            cell_positions=self.positions(),
            cell_types=np.array([cell.type for cell in self.cells], dtype=np.int64),
            cell_chains=np.array([cell.chain for cell in self.cells], dtype=np.int64),
            cell_chain_types=np.array([cell.chain_type for cell in self.cells], dtype=np.int64),
            cell_attached_to=np.array([cell.attached_to_id for cell in self.cells], dtype=np.int64),
            gamma=self.gamma,
            gamma_rate=self.gamma_t,
            concentration=self.concentration,
        )
        return filepath
