
"""Example: h-convergence of the HDG diffusion solver on simulated ranks"""
import sys
import numpy as np
import matplotlib.pyplot as plt

from pyhdg.driver import DiffusionDriver, RunConfig
from pyhdg.io.logfiles import configure_logging
from pyhdg.parallel.comm import run_spmd

nprocs = int(sys.argv[1]) if len(sys.argv) > 1 else 4
configure_logging(0, "WARNING")
cfg = RunConfig(p_0=1, p_n=3, h_0=1, h_n=5, face_basis="legendre", output_dir="convergence_output")

results = run_spmd(nprocs, lambda comm: DiffusionDriver(comm, cfg).run())[0]

fig, ax = plt.subplots()
for p in range(cfg.p_0, cfg.p_n):
    rows = [r for r in results if r.order == p and r.ok]
    h = np.array([r.h for r in rows])
    eu = np.array([r.u_error for r in rows])
    eq = np.array([r.q_error for r in rows])
    rate_u = np.log(eu[:-1] / eu[1:]) / np.log(h[:-1] / h[1:])
    rate_q = np.log(eq[:-1] / eq[1:]) / np.log(h[:-1] / h[1:])
    print(f'p={p}')
    for r, ru, rq in zip(rows, [np.nan, *rate_u], [np.nan, *rate_q]):
        print(f'  h={r.h:.4f} dofs={r.n_dofs:6d} its={r.iterations:4d} '
              f'|u-uh|={r.u_error:.3e} ({ru:4.2f})  |q-qh|={r.q_error:.3e} ({rq:4.2f})')
    ax.loglog(h, eu, 'o-', label=f'u, p={p}')
    ax.loglog(h, eq, 's--', label=f'q, p={p}')
ax.set_xlabel('h'); ax.set_ylabel('L2 error'); ax.legend(); ax.grid(True, which='both')
fig.savefig('convergence.png', dpi=120)
plt.show()
