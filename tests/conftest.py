import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from torch_blockop import LocalCluster


@pytest.fixture
def cluster():
    """Four in-process workers: worker-0 .. worker-3"""
    c = LocalCluster(4)
    yield c
    c.shutdown()


@pytest.fixture
def cluster2():
    c = LocalCluster(2)
    yield c
    c.shutdown()
