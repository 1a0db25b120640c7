# gmm_em/_io.py
"""Delimited-text ingestion: one observation per line, one feature per field."""

from __future__ import annotations

import logging
import os
from typing import Optional, Sequence, Union

import numpy as np
import pandas as pd
import torch

from ._matrix import DTYPE

logger = logging.getLogger(__name__)


def load_csv(
    path: Union[str, os.PathLike],
    delimiter: str = ",",
    columns: Optional[Sequence[Union[int, str]]] = None,
    header: Optional[int] = None,
) -> torch.Tensor:
    """Read a numeric CSV file into an (N, M) float64 tensor.

    Quoted fields and doubled-quote escapes are handled by pandas. ``columns``
    selects features by position (or by name when ``header`` is given).
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"No such data file: {path!r}")

    df = pd.read_csv(path, sep=delimiter, header=header, quotechar='"', doublequote=True, skipinitialspace=True)
    if columns is not None:
        if header is None or all(isinstance(c, int) for c in columns):
            df = df.iloc[:, list(columns)]
        else:
            df = df.loc[:, list(columns)]

    numeric = df.apply(pd.to_numeric, errors="coerce")
    bad = numeric.isna() & df.notna()
    if bad.to_numpy().any():
        row, col = np.argwhere(bad.to_numpy())[0]
        raise ValueError(f"non-numeric value {df.iat[row, col]!r} at line {row + 1}, field {col + 1} of {path!r}")
    if numeric.isna().to_numpy().any():
        raise ValueError(f"missing values in {path!r}")

    X = torch.as_tensor(numeric.to_numpy(dtype=np.float64), dtype=DTYPE)
    logger.info("loaded %d row(s) x %d column(s) from %s", X.shape[0], X.shape[1], path)
    return X
