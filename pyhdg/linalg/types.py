"""pyhdg.linalg.types
Enumerations shared by the engine objects.
"""
from enum import Enum


class InsertMode(Enum):
    INSERT_VALUES = "insert"
    ADD_VALUES = "add"


class NormType(Enum):
    NORM_1 = 1
    NORM_2 = 2
    NORM_INFINITY = 3


class VecOption(Enum):
    IGNORE_NEGATIVE_INDICES = "ignore_negative_indices"
    IGNORE_OFF_PROC_ENTRIES = "ignore_off_proc_entries"


class MatOption(Enum):
    ROW_ORIENTED = "row_oriented"
    SPD = "spd"
    SYMMETRIC = "symmetric"
    NEW_NONZERO_ALLOCATION_ERR = "new_nonzero_allocation_err"

