# conftest.py
import logging

import pytest
import sympy as sp

from pyhdg.fem.analytic import ManufacturedSolution, x, y
from pyhdg.io.logfiles import CONVERGENCE_LOGGER, EXECUTION_LOGGER
from pyhdg.parallel.comm import SerialComm


@pytest.fixture
def serial_comm():
    return SerialComm()


@pytest.fixture
def smooth_solution():
    """Non-polynomial manufactured solution with a nonzero source."""
    return ManufacturedSolution(sp.sin(sp.pi * x) * sp.sin(sp.pi * y) + x * y)


@pytest.fixture
def linear_solution():
    """u = 1 + x + 2y lies in every discrete space with order >= 1, so HDG reproduces it."""
    return ManufacturedSolution(1 + x + 2 * y, kappa=2.0)


@pytest.fixture(autouse=True)
def detach_result_handlers():
    """Result files must never stay attached between tests."""
    yield
    for name in (EXECUTION_LOGGER, CONVERGENCE_LOGGER):
        lg = logging.getLogger(name)
        for h in list(lg.handlers):
            lg.removeHandler(h)
            h.close()
