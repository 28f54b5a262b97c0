import pytest

from conftest import FakeOracle
from pvebulk.allocator import BlockAllocator, FileBlacklistStore, MemoryBlacklistStore


def make_allocator(occupied=(), min_id=100, max_id=99999, stride=100, blacklist=None):
    oracle = FakeOracle({vmid: 'pve1' for vmid in occupied})
    return BlockAllocator(oracle, blacklist or MemoryBlacklistStore(), min_id, max_id, stride)


def test_free_block_at_range_start() -> None:
    allocator = make_allocator()
    assert allocator.pick_base(4) == 100


def test_partially_occupied_block_moves_to_next_stride() -> None:
    allocator = make_allocator(occupied=[103])
    assert allocator.pick_base(4) == 200


def test_lowest_free_base_wins() -> None:
    allocator = make_allocator(occupied=[101, 250])
    assert allocator.pick_base(2) == 200
    assert allocator.pick_base(1) == 100


@pytest.mark.parametrize("block_size,occupied", [
    (1, [100, 200]),
    (4, [100, 201, 302]),
    (50, [149, 260]),
    (100, [199]),
])
def test_returned_block_is_aligned_in_range_and_unused(block_size, occupied) -> None:
    allocator = make_allocator(occupied=occupied, max_id=1000)
    base = allocator.pick_base(block_size)
    assert base is not None
    assert base % 100 == 0
    assert base >= 100
    assert base + block_size - 1 <= 1000
    assert not any(vmid in occupied for vmid in range(base, base + block_size))


def test_unaligned_min_id_rounds_up_to_stride() -> None:
    allocator = make_allocator(min_id=150, max_id=1000)
    assert allocator.pick_base(4) == 200


def test_every_candidate_occupied_returns_none() -> None:
    allocator = make_allocator(occupied=[100, 200, 300], max_id=399)
    assert allocator.pick_base(4) is None


def test_every_candidate_blacklisted_returns_none() -> None:
    blacklist = MemoryBlacklistStore()
    for base in (100, 200, 300):
        blacklist.mark(base)
    allocator = make_allocator(max_id=399, blacklist=blacklist)
    assert allocator.pick_base(4) is None


def test_block_too_large_for_range_never_queries() -> None:
    allocator = make_allocator(min_id=100, max_id=150)
    assert allocator.pick_base(100) is None
    assert allocator.oracle.queries == []


def test_last_candidate_must_fit_whole_block() -> None:
    # 300 is aligned but 300..303 would pass max_id
    allocator = make_allocator(occupied=[100, 200], max_id=302)
    assert allocator.pick_base(4) is None
    assert allocator.pick_base(3) == 300


def test_block_past_max_id_is_not_free() -> None:
    allocator = make_allocator(max_id=102)
    assert allocator.is_block_free(100, 3)
    assert not allocator.is_block_free(100, 4)


def test_availability_check_stops_at_first_conflict() -> None:
    allocator = make_allocator(occupied=[101])
    assert not allocator.is_block_free(100, 4)
    assert allocator.oracle.queries == [100, 101]


def test_blacklisted_base_is_skipped_without_query() -> None:
    blacklist = MemoryBlacklistStore()
    blacklist.mark(100)
    allocator = make_allocator(blacklist=blacklist)
    assert allocator.pick_base(4) == 200
    assert 100 not in allocator.oracle.queries


def test_mark_is_idempotent() -> None:
    blacklist = MemoryBlacklistStore()
    blacklist.mark(100)
    blacklist.mark(100)
    assert blacklist.marked() == {100}
    allocator = make_allocator(blacklist=blacklist)
    assert allocator.pick_base(4) == 200


def test_reset_reoffers_blacklisted_base() -> None:
    blacklist = MemoryBlacklistStore()
    blacklist.mark(100)
    allocator = make_allocator(blacklist=blacklist)
    assert allocator.pick_base(4) == 200
    blacklist.reset()
    assert allocator.pick_base(4) == 100


def test_invalid_arguments() -> None:
    with pytest.raises(ValueError):
        make_allocator().pick_base(0)
    with pytest.raises(ValueError):
        make_allocator(min_id=500, max_id=100)
    with pytest.raises(ValueError):
        make_allocator(stride=0)


def test_file_blacklist_writes_one_marker_per_base(tmp_path) -> None:
    store = FileBlacklistStore(str(tmp_path))
    store.mark(200)
    store.mark(200)
    assert (tmp_path / '.vmid_base_200_occupied').is_file()
    assert len(list(tmp_path.iterdir())) == 1
    assert store.is_marked(200)
    assert not store.is_marked(100)


def test_file_blacklist_survives_new_instance(tmp_path) -> None:
    FileBlacklistStore(str(tmp_path)).mark(300)
    assert FileBlacklistStore(str(tmp_path)).marked() == {300}


def test_file_blacklist_reset_only_removes_markers(tmp_path) -> None:
    other = tmp_path / 'unrelated.txt'
    other.write_text('keep')
    store = FileBlacklistStore(str(tmp_path))
    store.mark(100)
    store.mark(200)
    store.reset()
    assert store.marked() == set()
    assert other.is_file()


def test_file_blacklist_missing_directory(tmp_path) -> None:
    store = FileBlacklistStore(str(tmp_path / 'missing'))
    assert store.marked() == set()
    store.reset()
    store.mark(100)
    assert store.is_marked(100)


def test_fits_range() -> None:
    allocator = make_allocator(min_id=100, max_id=1000)
    assert allocator.fits_range(100, 4)
    assert allocator.fits_range(997, 4)
    assert not allocator.fits_range(998, 4)
    assert not allocator.fits_range(99, 1)
    assert not allocator.fits_range(100, 0)
