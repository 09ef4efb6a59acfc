import argparse
import time

import numpy as np
import imdlink as imd

# Harmonic dimers in a periodic box, integrated with velocity Verlet, served over IMD.
# Connect with VMD (imd connect localhost 8888) or `imd_client -p 8888`.
# Runs serially or under mpirun (dimers are split over ranks).

parser = argparse.ArgumentParser(description="Toy MD run serving IMD.")
parser.add_argument("--steps", type=int, default=100000)
parser.add_argument("--dimers", type=int, default=50)
parser.add_argument("--sleep", type=float, default=0.002, help="wall-clock pause per step (s)")
imd.add_imd_arguments(parser)
args = parser.parse_args()

group = imd.ProcessGroup()
rng = np.random.default_rng(2026)

box = np.eye(3) * 4.0
natoms = 2 * args.dimers
dt = 0.002  # ps
mass = 12.0  # g/mol
k_bond = 5.0e4  # kJ/mol/nm^2
r0 = 0.12  # nm
kB = 0.0083144626  # kJ/mol/K

x = np.repeat(rng.uniform(0.0, 4.0, size=(args.dimers, 3)), 2, axis=0)
x[1::2, 0] += r0
x = group.bcast_array(x)
v = np.zeros_like(x)

owned = np.array_split(np.arange(args.dimers), group.size)[group.rank]
owned = np.stack([2 * owned, 2 * owned + 1], axis=1).reshape(-1)

engine = imd.ArrayEngine(
    x,
    box=box,
    owned=owned,
    molecule_starts=np.arange(0, natoms + 1, 2),
    partition_interval=10,
)


def bond_forces(x):
    d = x[1::2] - x[0::2]
    d -= 4.0 * np.round(d / 4.0)  # minimum image, cubic box
    r = np.linalg.norm(d, axis=1, keepdims=True)
    f = -k_bond * (r - r0) * d / r
    out = np.zeros_like(x)
    out[1::2] = f
    out[0::2] = -f
    return out, 0.5 * k_bond * float(np.sum((r - r0) ** 2))


session = imd.ImdSession(engine, imd.ImdOptions.from_args(args), group=group, nstcalcenergy=10)

f_bond, epot = bond_forces(engine.x)
for step in range(args.steps):
    # a kill reaches only the coordinator's engine; all ranks leave together
    if group.bcast(engine.stop_requested()):
        break
    transmit = session.do_step(step, time=step * dt)

    engine.clear_forces()
    session.apply_forces()

    v[owned] += 0.5 * dt * (f_bond[owned] + engine.f) / mass
    x_local = np.zeros_like(engine.x)
    x_local[owned] = engine.x[owned] + dt * v[owned]
    engine.x[:] = group.sum_array(x_local)
    if engine.is_partition_step(step + 1):
        engine.wrap()

    f_bond, epot = bond_forces(engine.x)
    v[owned] += 0.5 * dt * (f_bond[owned] + engine.f) / mass

    ekin = float(group.sum_array(np.array([0.5 * mass * np.sum(v[owned] ** 2)]))[0])
    engine.energies = {
        "temperature": 2.0 * ekin / (3 * natoms * kB),
        "total": epot + ekin,
        "potential": epot,
        "bond": epot,
    }
    session.publish(step, transmit, have_new_energies=(step % 10 == 0))
    time.sleep(args.sleep)

session.finalize()
