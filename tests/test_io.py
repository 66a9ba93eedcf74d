"""Tests for HDF5 row-slab I/O and DRowMatrix loading."""

import os
import sys
import tempfile

import h5py
import numpy as np
import pytest
import torch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from torch_dsvd import DRowMatrix, DataLoadError, partition_rows
from torch_dsvd.io import save_matrix, load_row_slab, load_dataset_info


def create_matrix(m, n, seed=0):
    g = torch.Generator().manual_seed(seed)
    return torch.randn(m, n, generator=g, dtype=torch.float64)


class TestRowSlabIO:
    """Test hyperslab reads of contiguous row ranges."""

    def test_save_and_info(self):
        A = create_matrix(10, 4)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", A)
            shape, dtype = load_dataset_info(path, "A")
            assert shape == (10, 4)
            assert dtype == np.float64

    def test_slabs_cover_matrix(self):
        A = create_matrix(11, 3)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", A)
            slabs = [load_row_slab(path, "A", p, numcols=3, numrows=11)
                     for p in partition_rows(11, 4)]
            assert [s.shape[0] for s in slabs] == [3, 3, 3, 2]
            assert torch.equal(torch.cat(slabs), A)

    def test_nested_dataset_and_overwrite(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "sub", "matrix.h5")
            save_matrix(path, "group/A", np.ones((4, 2)))
            save_matrix(path, "group/A", np.zeros((6, 2)))
            part = partition_rows(6, 1)[0]
            slab = load_row_slab(path, "group/A", part, numcols=2)
            assert slab.shape == (6, 2)
            assert torch.all(slab == 0)

    def test_float32_dataset_is_widened(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            with h5py.File(path, 'w') as f:
                f.create_dataset("A", data=np.arange(12, dtype=np.float32).reshape(4, 3))
            slab = load_row_slab(path, "A", partition_rows(4, 2)[1], numcols=3)
            assert slab.dtype == torch.float64
            assert slab.tolist() == [[6.0, 7.0, 8.0], [9.0, 10.0, 11.0]]

    def test_trailing_rows_ignored_with_warning(self):
        A = create_matrix(10, 3)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", A)
            part = partition_rows(8, 2)[1]
            with pytest.warns(UserWarning, match="only the first 8"):
                slab = load_row_slab(path, "A", part, numcols=3, numrows=8)
            assert torch.equal(slab, A[4:8])


class TestRowSlabErrors:
    """I/O failures surface as DataLoadError."""

    def test_missing_file(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(DataLoadError):
                load_row_slab(os.path.join(tmpdir, "nope.h5"), "A",
                              partition_rows(4, 1)[0], numcols=3)

    def test_not_hdf5(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            with open(path, "w") as f:
                f.write("not an hdf5 file")
            with pytest.raises(DataLoadError):
                load_row_slab(path, "A", partition_rows(4, 1)[0], numcols=3)
            with pytest.raises(DataLoadError):
                load_dataset_info(path, "A")

    def test_missing_dataset(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", create_matrix(4, 3))
            with pytest.raises(DataLoadError, match="not found"):
                load_row_slab(path, "B", partition_rows(4, 1)[0], numcols=3)

    def test_column_mismatch(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", create_matrix(4, 3))
            with pytest.raises(DataLoadError, match="columns"):
                load_row_slab(path, "A", partition_rows(4, 1)[0], numcols=5)

    def test_too_few_rows(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", create_matrix(4, 3))
            with pytest.raises(DataLoadError, match="fewer"):
                load_row_slab(path, "A", partition_rows(6, 2)[1], numcols=3, numrows=6)

    def test_group_instead_of_dataset(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            with h5py.File(path, 'w') as f:
                f.create_group("A")
            with pytest.raises(DataLoadError, match="not a dataset"):
                load_row_slab(path, "A", partition_rows(4, 1)[0], numcols=3)
            with pytest.raises(DataLoadError):
                DRowMatrix.load(path, "A", numrows=4, numcols=3, verbose=False)

    def test_not_2d(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            with h5py.File(path, 'w') as f:
                f.create_dataset("A", data=np.zeros(5))
            with pytest.raises(DataLoadError, match="2-D"):
                load_row_slab(path, "A", partition_rows(5, 1)[0], numcols=1)


class TestDRowMatrixLoad:
    """Test loading a DRowMatrix on a single process."""

    def test_load(self, capsys):
        A = create_matrix(7, 4)
        with tempfile.TemporaryDirectory() as tmpdir:
            path = os.path.join(tmpdir, "matrix.h5")
            save_matrix(path, "A", A)
            D = DRowMatrix.load(path, "A", numrows=7, numcols=4)
        out = capsys.readouterr().out
        assert "Rank 0: assigned 7 rows, 0--6" in out
        assert "Rank 0: loaded my data" in out
        assert D.global_shape == (7, 4)
        assert torch.equal(D.slab, A)

    def test_load_failure(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            with pytest.raises(DataLoadError):
                DRowMatrix.load(os.path.join(tmpdir, "missing.h5"), "A",
                                numrows=7, numcols=4, verbose=False)

    def test_print_rows(self, capsys):
        A = torch.tensor([[1.0, 2.0], [3.0, 4.0]], dtype=torch.float64)
        D = DRowMatrix.from_global(A)
        D.print_rows()
        out = capsys.readouterr().out.splitlines()
        assert out[0].strip() == "A[0][0] = 1.000000"
        assert out[3].strip() == "A[1][1] = 4.000000"
