import os
import sys

# before numpy / BLAS are loaded
for _var in ("OMP_NUM_THREADS", "OPENBLAS_NUM_THREADS", "MKL_NUM_THREADS"):
    os.environ.setdefault(_var, "1")


def cli() -> int:
    from pyhdg.driver import main
    return main(sys.argv[1:])


if __name__ == "__main__":
    sys.exit(cli())
