"""pyhdg: distributed hybridized DG solver for mixed diffusion problems.

Kept free of heavy imports so that ``python -m pyhdg`` can limit the BLAS
thread pools before numpy is loaded.
"""
__version__ = "0.1.0"
