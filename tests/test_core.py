import itertools
import pickle

import numpy as np
import pytest

import blockray as br
from blockray.utils import get_rand


def all_coords(shape):
    return itertools.product(*map(range, shape))


def get_fixture_pair(seed_a=7, seed_b=8):
    indices = ([2, 3], [4, 5])
    labels = [(1, 2), (2, 1)]
    a = br.BlockSparseTensor.random(indices, labels, seed=seed_a)
    b = br.BlockSparseTensor.random(indices, labels, seed=seed_b)
    return a, b


def test_construction_basics():
    x = br.BlockSparseTensor.random(
        [[2, 3], [4, 5]], labels=[(2, 1), (1, 2)], seed=42
    )
    assert x.shape == (5, 9)
    assert x.size == 45
    assert x.ndim == 2
    assert x.sizes == ((2, 3), (4, 5))
    assert x.labels == ((1, 2), (2, 1))
    assert x.num_blocks == x.nonzero_block_count() == 2
    assert x.nnz == x.nonzero_element_count() == 2 * 5 + 3 * 4
    assert x.data.shape == (22,)
    assert x.dtype == "float64"
    assert x.backend == "numpy"
    assert x.get_sparsity() == 0.5
    assert x.index_of((2, 1)) == 1
    assert x.block_shape((2, 2)) == (3, 5)
    x.check()


def test_constructor_with_data():
    data = np.arange(22.0)
    x = br.BlockSparseTensor([[2, 3], [4, 5]], [(1, 2), (2, 1)], data=data)
    np.testing.assert_allclose(
        x.block_view((1, 2)), np.arange(10.0).reshape(2, 5)
    )
    np.testing.assert_allclose(
        x.block_view((2, 1)), np.arange(10.0, 22.0).reshape(3, 4)
    )
    with pytest.raises(ValueError):
        br.BlockSparseTensor([[2, 3], [4, 5]], [(1, 2)], data=data)
    with pytest.raises(ValueError):
        br.BlockSparseTensor(
            [[2, 3], [4, 5]], [(1, 2)], data=np.zeros((2, 5))
        )


def test_nnz_is_sum_of_block_sizes():
    x = get_rand([[1, 2, 3], [2, 2], [3, 1]], density=0.6, seed=3)
    assert x.nnz == sum(
        np.prod(x.block_shape(label)) for label in x.labels
    )
    assert x.num_blocks == len(set(x.labels))
    assert x.nnz == x.data.size


def test_absent_blocks_read_zero():
    x = br.BlockSparseTensor.zeros([[2, 3], [4, 5]])
    assert x.num_blocks == 0
    assert x.nnz == 0
    assert x[3, 7] == 0.0
    assert x.get((0, 0)) == 0.0
    np.testing.assert_allclose(x.to_dense(), np.zeros((5, 9)))


@pytest.mark.parametrize("coord", [(5, 0), (0, 9), (-1, 0), (0,), (0, 0, 0)])
def test_get_out_of_bounds(coord):
    x = br.BlockSparseTensor.zeros([[2, 3], [4, 5]])
    with pytest.raises(br.IndexOutOfBounds):
        x[coord]
    with pytest.raises(IndexError):
        x[coord] = 1.0
    # no block was created by the failed write
    assert x.num_blocks == 0


def test_set_materializes_blocks():
    x = br.BlockSparseTensor.zeros([[2, 3], [4, 5]])

    writes = [
        ((0, 0), (1, 1), 8),
        ((2, 4), (2, 2), 8 + 15),
        ((1, 8), (1, 2), 8 + 15 + 10),
        ((4, 3), (2, 1), 8 + 15 + 10 + 12),
    ]

    for i, (coord, label, nnz) in enumerate(writes):
        assert not x.has_block(label)
        x[coord] = i + 1.0
        assert x.is_block_present(label)
        assert x.num_blocks == i + 1
        assert x.nnz == nnz
        # every previous write is intact
        for j, (prev, _, _) in enumerate(writes[: i + 1]):
            assert x[prev] == j + 1.0

    expected = np.zeros((5, 9))
    for i, (coord, _, _) in enumerate(writes):
        expected[coord] = i + 1.0
    np.testing.assert_allclose(x.to_dense(), expected)
    x.check()


def test_set_get_roundtrip():
    x = br.BlockSparseTensor.random(
        [[2, 3], [1, 3], [2, 2]],
        labels=[(1, 1, 2), (2, 2, 1), (2, 1, 1)],
        seed=5,
    )
    dense = x.to_dense()

    for coord, value in [
        ((0, 0, 2), -3.0),  # present block
        ((4, 3, 0), 2.5),  # present block
        ((0, 3, 0), 1.25),  # absent block (1, 2, 1)
        ((3, 0, 3), 0.5),  # absent block (2, 1, 2)
    ]:
        x[coord] = value
        dense[coord] = value
        assert x[coord] == value

    assert x.num_blocks == 5
    for coord in all_coords(x.shape):
        assert x[coord] == dense[coord]


def test_failed_set_leaves_no_block():
    x = br.BlockSparseTensor.zeros([[2, 3], [4, 5]])
    with pytest.raises(ValueError):
        x[0, 0] = "not a number"
    assert x.num_blocks == 0
    assert x.nnz == 0
    x[0, 0] = 2
    assert x[0, 0] == 2.0
    assert x.num_blocks == 1


def test_block_views_write_through():
    x = br.BlockSparseTensor.random(
        [[2, 3], [4, 5]], labels=[(1, 2), (2, 1)], seed=1
    )
    view = x.block_view((1, 2))
    assert view.shape == (2, 5)
    view[0, 0] = 7.0
    assert x[0, 4] == 7.0
    np.testing.assert_allclose(x.block_view_at(1), x.block_view((2, 1)))

    blocks = x.blocks
    assert list(blocks) == [(1, 2), (2, 1)]

    with pytest.raises(br.BlockNotFound):
        x.block_view((1, 1))
    with pytest.raises(br.InvalidBlockLabel):
        x.block_view((1, 3))
    with pytest.raises(br.InvalidBlockLabel):
        x.materialize_block((0, 1))

    x.set_block((1, 1), np.ones((2, 4)))
    assert x.num_blocks == 3
    np.testing.assert_allclose(x.to_dense()[:2, :4], np.ones((2, 4)))

    # materializing a present block is a no-op
    data = x.data
    x.materialize_block((1, 1))
    assert x.data is data


def test_from_blocks_checks_shapes():
    with pytest.raises(ValueError):
        br.BlockSparseTensor.from_blocks(
            [[2, 3], [4, 5]], {(1, 1): np.ones((2, 5))}
        )


def test_from_dense_roundtrip():
    rng = np.random.default_rng(42)
    dense = rng.normal(size=(5, 9))
    # make block (1, 2) and (2, 1) exactly zero
    dense[:2, 4:] = 0.0
    dense[2:, :4] = 0.0

    x = br.BlockSparseTensor.from_dense(dense, [[2, 3], [4, 5]])
    assert x.labels == ((1, 1), (2, 2))
    np.testing.assert_allclose(x.to_dense(), dense)

    y = br.BlockSparseTensor.from_dense(
        dense, [[2, 3], [4, 5]], labels=[(1, 1), (1, 2)]
    )
    assert y.labels == ((1, 1), (1, 2))
    np.testing.assert_allclose(y.block_view((1, 2)), np.zeros((2, 5)))

    with pytest.raises(br.IncompatibleIndexSpaces):
        br.BlockSparseTensor.from_dense(dense, [[2, 3], [4, 4]])


@pytest.mark.parametrize(
    "sizes,perm",
    [
        ([[2, 3], [4, 5]], (1, 0)),
        ([[2, 1], [3], [1, 2, 2]], (2, 0, 1)),
        ([[2, 1], [3], [1, 2, 2]], (1, 2, 0)),
        ([[1, 2], [2, 1], [1, 1], [2]], (3, 1, 0, 2)),
    ],
)
def test_transpose(sizes, perm):
    x = get_rand(sizes, density=0.5, seed=11)
    y = x.transpose(perm)
    y.check()
    assert y.num_blocks == x.num_blocks
    assert y.nnz == x.nnz
    assert y.shape == tuple(x.shape[p] for p in perm)
    np.testing.assert_allclose(y.to_dense(), np.transpose(x.to_dense(), perm))
    for coord in all_coords(x.shape):
        assert y[tuple(coord[p] for p in perm)] == x[coord]

    # permute is an alias
    assert x.permute(perm).allclose(y)

    # and the inverse permutation returns the original
    perm_inv = tuple(perm.index(i) for i in range(len(perm)))
    assert y.transpose(perm_inv).allclose(x)


def test_transpose_default_and_invalid():
    x = get_rand([[2, 1], [3], [1, 2]], seed=2)
    np.testing.assert_allclose(x.transpose().to_dense(), x.to_dense().T)
    np.testing.assert_allclose(x.T.to_dense(), x.to_dense().T)
    with pytest.raises(ValueError):
        x.transpose((0, 0, 1))
    with pytest.raises(ValueError):
        x.transpose((0, 1))
    with pytest.raises(ValueError):
        x.transpose((3, 0, 1))
    with pytest.raises(ValueError):
        x.transpose((-4, 0, 1))
    np.testing.assert_allclose(
        x.transpose((-1, 0, 1)).to_dense(), x.to_dense().transpose(2, 0, 1)
    )


def test_addition_scenario():
    a, b = get_fixture_pair()
    r = a + b
    r.check()
    assert r.nnz == 22
    assert r.num_blocks == 2
    for coord in all_coords(r.shape):
        assert r[coord] == a[coord] + b[coord]


def test_addition_disjoint_blocks():
    a = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(1, 1)], seed=1)
    b = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(2, 2), (1, 2)], seed=2)
    r = a + b
    assert r.num_blocks == a.num_blocks + b.num_blocks
    assert r.labels == ((1, 1), (1, 2), (2, 2))
    np.testing.assert_allclose(r.to_dense(), a.to_dense() + b.to_dense())

    s = a - b
    np.testing.assert_allclose(s.to_dense(), a.to_dense() - b.to_dense())

    # operands are untouched
    assert a.num_blocks == 1
    assert b.num_blocks == 2


def test_inplace_addition():
    a = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(1, 1)], seed=1)
    b = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(2, 2)], seed=2)
    da, db = a.to_dense(), b.to_dense()
    a += b
    np.testing.assert_allclose(a.to_dense(), da + db)
    a -= b
    a -= b
    np.testing.assert_allclose(a.to_dense(), da - db)
    assert a.num_blocks == 2


def test_sum_of_tensors():
    a, b = get_fixture_pair()
    r = sum([a, b, a])
    np.testing.assert_allclose(
        r.to_dense(), 2 * a.to_dense() + b.to_dense()
    )


def test_elementwise_multiply_keeps_shared_blocks():
    a = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(1, 1), (2, 2)], seed=1)
    b = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(2, 2), (1, 2)], seed=2)
    c = a * b
    assert c.labels == ((2, 2),)
    np.testing.assert_allclose(c.to_dense(), a.to_dense() * b.to_dense())


@pytest.mark.parametrize(
    "sizes_b",
    [
        ([3, 2], [4, 5]),
        ([2, 3], [9]),
        ([2, 3], [4, 5], [1]),
    ],
)
def test_addition_incompatible(sizes_b):
    a = br.BlockSparseTensor.random([[2, 3], [4, 5]], [(1, 1)], seed=1)
    b = br.BlockSparseTensor.zeros(sizes_b)
    with pytest.raises(br.IncompatibleIndexSpaces):
        a + b


def test_addition_mismatched_qns():
    a = br.BlockSparseTensor.zeros(
        [br.IndexSpace([2, 3], qns=[0, 1]), [4, 5]]
    )
    b = br.BlockSparseTensor.zeros(
        [br.IndexSpace([2, 3], qns=[1, 0]), [4, 5]]
    )
    with pytest.raises(br.IncompatibleIndexSpaces):
        a + b


def test_scalar_arithmetic():
    x = get_rand([[2, 3], [4, 5]], density=0.5, seed=4)
    d = x.to_dense()
    np.testing.assert_allclose((2 * x).to_dense(), 2 * d)
    np.testing.assert_allclose((x * 3).to_dense(), 3 * d)
    np.testing.assert_allclose((x / 2).to_dense(), d / 2)
    np.testing.assert_allclose((-x).to_dense(), -d)
    np.testing.assert_allclose(x.abs().to_dense(), np.abs(d))
    assert x.norm() == pytest.approx(np.linalg.norm(d))
    assert x.sum() == pytest.approx(d.sum())

    y = x.copy()
    y *= 2
    np.testing.assert_allclose(y.to_dense(), 2 * d)
    # copy does not share data
    np.testing.assert_allclose(x.to_dense(), d)


def test_complex_conj():
    x = br.BlockSparseTensor.random(
        [[2, 3], [4, 5]], [(1, 1), (2, 2)], seed=9, dtype="complex128"
    )
    assert x.dtype == "complex128"
    d = x.to_dense()
    np.testing.assert_allclose(x.conj().to_dense(), d.conj())
    np.testing.assert_allclose(x.real.to_dense(), d.real)
    np.testing.assert_allclose(x.imag.to_dense(), d.imag)


def test_allclose():
    a, b = get_fixture_pair()
    assert a.allclose(a.copy())
    assert not a.allclose(b)
    # explicit zero blocks compare equal to absent blocks
    c = a.copy()
    c.materialize_block((1, 1))
    assert c.num_blocks == 3
    assert a.allclose(c)
    assert c.allclose(a)


def test_state_roundtrip():
    x = br.BlockSparseTensor.random(
        [br.IndexSpace([2, 3], qns=[0, 1]), [4, 5]],
        labels=[(1, 2), (2, 1)],
        seed=3,
    )
    state = x.to_state()
    assert state["labels"] == [[1, 2], [2, 1]]
    y = br.BlockSparseTensor.from_state(state)
    assert y.indices == x.indices
    assert y.labels == x.labels
    assert y.allclose(x)

    # the state and the rebuilt tensor each own their storage
    before = x[0, 4]
    y[0, 4] = 99.0
    assert x[0, 4] == before
    state["data"][:] = 0.0
    assert x[0, 4] == before
    assert y[0, 4] == 99.0

    z = pickle.loads(pickle.dumps(x))
    assert z.indices == x.indices
    assert z.allclose(x)


def test_state_roundtrip_fused():
    x = get_rand([[2, 3], [1, 2], [4]], density=0.7, seed=6)
    xf = x.fuse((0, 1))
    y = br.BlockSparseTensor.from_state(xf.to_state())
    assert y.indices[0].subinfo == xf.indices[0].subinfo
    assert y.unfuse(0).allclose(x)


def test_repr_and_str():
    x = br.BlockSparseTensor.zeros([[2, 3], [4, 5]])
    assert "num_blocks=0" in repr(x)
    assert "5 = 2+3" in str(x)
