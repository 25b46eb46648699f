import sys
from pathlib import Path

import matplotlib
matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

# Make the package importable without installation
sys.path.insert(0, str(Path(__file__).resolve().parents[1] / 'tools'))


@pytest.fixture
def small_table():
    """Three samples x four taxa, samples as rows."""
    return pd.DataFrame(
        [[10, 0, 0, 0],
         [5, 5, 0, 0],
         [2, 2, 2, 2]],
        index=pd.Index(['S1', 'S2', 'S3'], name='sample_id'),
        columns=['T1', 'T2', 'T3', 'T4'],
    )


@pytest.fixture
def depth_table():
    """Samples with totals 500, 1500 and 3000."""
    return pd.DataFrame(
        [[200, 300, 0],
         [500, 500, 500],
         [1000, 1500, 500]],
        index=pd.Index(['low', 'mid', 'high'], name='sample_id'),
        columns=['ASV1', 'ASV2', 'ASV3'],
    )


@pytest.fixture
def grouped_table():
    """Eight samples in two clearly separated communities."""
    rng = np.random.default_rng(0)
    rows = []
    for i in range(8):
        base = [80, 10, 5, 5, 0, 0] if i < 4 else [0, 5, 5, 10, 40, 40]
        rows.append([b + int(rng.integers(0, 5)) for b in base])
    return pd.DataFrame(
        rows,
        index=pd.Index([f'S{i}' for i in range(8)], name='sample_id'),
        columns=[f'ASV{j}' for j in range(6)],
    )


@pytest.fixture
def grouped_metadata():
    return pd.DataFrame(
        {'Group': ['A'] * 4 + ['B'] * 4,
         'Run': ['r1', 'r2'] * 4},
        index=[f'S{i}' for i in range(8)],
    )
