import pickle

import pytest

import blockray as br
from blockray.index import check_label


def test_index_space_basics():
    ix = br.IndexSpace([2, 3, 1])
    assert ix.sizes == (2, 3, 1)
    assert ix.num_chunks == 3
    assert ix.size_total == 6
    assert ix.offsets == (0, 2, 5)
    assert ix.size_of(2) == 3
    assert ix.slice_of(2) == slice(2, 5)
    assert ix.qns is None
    assert ix.qn_of(1) is None
    assert ix.subinfo is None


@pytest.mark.parametrize(
    "coord,expected",
    [(0, (1, 0)), (1, (1, 1)), (2, (2, 0)), (4, (2, 2)), (5, (3, 0))],
)
def test_locate(coord, expected):
    ix = br.IndexSpace([2, 3, 1])
    assert ix.locate(coord) == expected


@pytest.mark.parametrize("coord", [-1, 6, 100])
def test_locate_out_of_bounds(coord):
    ix = br.IndexSpace([2, 3, 1])
    with pytest.raises(br.IndexOutOfBounds):
        ix.locate(coord)
    # also usable as a plain IndexError
    with pytest.raises(IndexError):
        ix.locate(coord)


@pytest.mark.parametrize(
    "sizes,qns",
    [
        ([], None),
        ([2, 0], None),
        ([2, -1], None),
        ([2, 3], [0]),
    ],
)
def test_invalid_index_space(sizes, qns):
    with pytest.raises(ValueError):
        br.IndexSpace(sizes, qns=qns)


def test_matches_and_equality():
    a = br.IndexSpace([2, 3])
    b = br.IndexSpace([2, 3], qns=[0, 1])
    c = br.IndexSpace([2, 3], qns=[1, 0])
    assert a.matches(b)
    assert b.matches(a)
    assert not b.matches(c)
    assert not a.matches(br.IndexSpace([3, 2]))
    assert a == br.IndexSpace((2, 3))
    assert a != b
    assert hash(a) == hash(br.IndexSpace([2, 3]))
    assert len({a, br.IndexSpace([2, 3]), b}) == 2


def test_fuse_row_major():
    a = br.IndexSpace([2, 3])
    b = br.IndexSpace([4, 5])
    ab = br.IndexSpace.fuse(a, b)
    assert ab.sizes == (8, 10, 12, 15)
    assert ab.size_total == 45
    assert ab.subshape == (5, 9)
    assert ab.subinfo.indices == (a, b)
    assert ab.subinfo.subchunks(1) == (1, 1)
    assert ab.subinfo.subchunks(2) == (1, 2)
    assert ab.subinfo.subchunks(3) == (2, 1)
    assert ab.subinfo.subchunks(4) == (2, 2)
    for c in range(1, 5):
        assert ab.subinfo.chunk_of(ab.subinfo.subchunks(c)) == c
    assert ab.subinfo.subblock_shape(3) == (3, 4)


def test_fuse_qns():
    a = br.IndexSpace([1, 2], qns=[0, 1])
    b = br.IndexSpace([3], qns=["up"])
    ab = br.IndexSpace.fuse(a, b)
    assert ab.qns == ((0, "up"), (1, "up"))
    # labels are only combined if every subindex has them
    ac = br.IndexSpace.fuse(a, br.IndexSpace([3]))
    assert ac.qns is None


def test_copy_with_and_drop_subinfo():
    ab = br.IndexSpace.fuse(br.IndexSpace([2]), br.IndexSpace([2, 1]))
    assert ab.drop_subinfo().subinfo is None
    assert ab.drop_subinfo() == ab
    new = ab.copy_with(qns=["x", "y"])
    assert new.qns == ("x", "y")
    assert new.subinfo is ab.subinfo
    with pytest.raises(TypeError):
        ab.copy_with(flow=True)


def test_index_space_pickle():
    ab = br.IndexSpace.fuse(
        br.IndexSpace([2, 3], qns=[0, 1]), br.IndexSpace([4], qns=[0])
    )
    new = pickle.loads(pickle.dumps(ab))
    assert new == ab
    assert new.subinfo == ab.subinfo


def test_check_label():
    indices = (br.IndexSpace([2, 3]), br.IndexSpace([4, 5, 6]))
    assert check_label([1, 3], indices) == (1, 3)
    for label in [(0, 1), (3, 1), (1, 4), (1,), (1, 1, 1), 5, ("a", 1)]:
        with pytest.raises(br.InvalidBlockLabel):
            check_label(label, indices)
