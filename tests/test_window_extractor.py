import numpy as np
import pytest

from tpxclust.config.schemas import WindowCfg
from tpxclust.errors import OrderingError
from tpxclust.physics.hits import Hit, Trigger
from tpxclust.windows.extractor import WindowExtractor, extract_windows
from tpxclust.windows.policy import OverlapPolicy


def _hits(*toas):
    return [Hit(1, 1, t, 2) for t in toas]


def _trig(*stamps):
    return [Trigger(id=i + 1, timestamp=t) for i, t in enumerate(stamps)]


def test_disjoint_windows():
    windows = extract_windows(_hits(97, 103, 598, 603), _trig(100, 600), pre_window=5, post_window=5)
    assert [(w.t_start, w.t_end) for w in windows] == [(95, 105), (595, 605)]
    assert [w.hit_ids for w in windows] == [[0, 1], [2, 3]]
    assert [w.trigger.id for w in windows] == [1, 2]


@pytest.mark.parametrize(
    "policy, expected",
    [
        ("independent", [[0], [0]]),
        ("split_at_midpoint", [[0], []]),
        ("exclusive", [[], []]),
    ],
)
def test_overlap_policies_on_midpoint_hit(policy, expected):
    ex = WindowExtractor(WindowCfg(pre_window=5, post_window=5, overlap_policy=policy))
    windows = ex.run(_hits(104), _trig(100, 108))
    assert [(w.t_start, w.t_end) for w in windows] == [(95, 105), (103, 113)]
    assert [w.hit_ids for w in windows] == expected
    assert ex.stats.contested == 1
    assert ex.stats.dropped == (1 if policy == "exclusive" else 0)


def test_split_at_midpoint_picks_nearest_trigger():
    windows = extract_windows(
        _hits(103, 105), _trig(100, 108),
        pre_window=5, post_window=5, overlap_policy=OverlapPolicy.SPLIT_AT_MIDPOINT,
    )
    assert [w.hit_ids for w in windows] == [[0], [1]]


def test_three_overlapping_windows():
    hits = _hits(102, 104)
    trig = _trig(100, 104, 108)
    kw = dict(pre_window=10, post_window=10)

    indep = extract_windows(hits, trig, overlap_policy="independent", **kw)
    assert [w.hit_ids for w in indep] == [[0, 1], [0, 1], [0, 1]]

    split = extract_windows(hits, trig, overlap_policy="split_at_midpoint", **kw)
    # 102 ties between 100 and 104 -> earlier; 104 sits on the middle trigger
    assert [w.hit_ids for w in split] == [[0], [1], []]

    excl = extract_windows(hits, trig, overlap_policy="exclusive", **kw)
    assert all(w.is_empty for w in excl)


def test_uncontested_hits_are_kept_by_every_policy():
    hits = _hits(96, 104, 112)
    trig = _trig(100, 108)
    for policy in OverlapPolicy:
        windows = extract_windows(hits, trig, pre_window=5, post_window=5, overlap_policy=policy)
        assert windows[0].hit_ids[0] == 0
        assert windows[1].hit_ids[-1] == 2


def test_empty_inputs():
    assert extract_windows([], []) == []
    windows = extract_windows([], _trig(10, 20), pre_window=1, post_window=1)
    assert len(windows) == 2
    assert all(w.is_empty for w in windows)


def test_hits_without_triggers():
    ex = WindowExtractor()
    assert ex.run(_hits(1, 2, 3), []) == []
    assert ex.stats.hits_in == 3
    assert ex.stats.hits_in_windows == 0


def test_trigger_without_hits_is_emitted_in_order():
    windows = extract_windows(_hits(100, 600), _trig(100, 300, 600), pre_window=5, post_window=5)
    assert [w.trigger.timestamp for w in windows] == [100, 300, 600]
    assert [w.size for w in windows] == [1, 0, 1]


def test_triggers_after_last_hit_get_empty_windows():
    windows = extract_windows(_hits(10), _trig(10, 1000, 2000), pre_window=5, post_window=5)
    assert [w.size for w in windows] == [1, 0, 0]


def test_window_start_clamped_at_zero():
    (w,) = extract_windows(_hits(0, 2), _trig(3), pre_window=5, post_window=5)
    assert (w.t_start, w.t_end) == (0, 8)
    assert w.hit_ids == [0, 1]


def test_window_bounds_law():
    hits = [Hit(0, 0, t, 1) for t in range(0, 1000, 7)]
    trig = _trig(*range(20, 1000, 45))
    windows = extract_windows(hits, trig, pre_window=12, post_window=30)
    assert len(windows) == len(trig)
    for w in windows:
        assert w.t_start == max(0, w.trigger.timestamp - 12)
        assert w.t_end == w.trigger.timestamp + 30
        assert all(w.contains(h.toa) for h in w.hits)
        expected = [i for i, h in enumerate(hits) if w.t_start <= h.toa <= w.t_end]
        assert w.hit_ids == expected


def test_hit_ordering_error():
    with pytest.raises(OrderingError) as ei:
        extract_windows(_hits(10, 5), _trig(10))
    assert ei.value.stream == "hits"
    assert ei.value.index == 1


def test_hit_ordering_checked_after_last_window():
    with pytest.raises(OrderingError):
        extract_windows(_hits(100, 1000, 500), _trig(100), pre_window=1, post_window=1)


def test_trigger_timestamp_ordering_error():
    with pytest.raises(OrderingError) as ei:
        extract_windows([], _trig(100, 100))
    assert ei.value.stream == "triggers"
    assert ei.value.field == "timestamp"


def test_trigger_id_ordering_error():
    trig = [Trigger(id=2, timestamp=100), Trigger(id=1, timestamp=200)]
    with pytest.raises(OrderingError) as ei:
        extract_windows(_hits(100, 200), trig)
    assert ei.value.field == "id"
    assert (ei.value.previous, ei.value.current) == (2, 1)


def test_windows_are_yielded_before_stream_ends():
    consumed = []

    def stream():
        for t in (100, 101, 5000, 5001):
            consumed.append(t)
            yield Hit(0, 0, t, 1)

    it = WindowExtractor(WindowCfg(pre_window=5, post_window=5)).iter_windows(stream(), _trig(100, 5000))
    first = next(it)
    assert first.hit_ids == [0, 1]
    assert consumed == [100, 101, 5000]


def _brute_force_windows(hits, triggers, pre, post, policy):
    """Assign each hit by checking every window's bounds directly."""
    bounds = [(max(0, t.timestamp - pre), t.timestamp + post) for t in triggers]
    out = [[] for _ in triggers]
    for i, h in enumerate(hits):
        inside = [k for k, (lo, hi) in enumerate(bounds) if lo <= h.toa <= hi]
        if policy == "independent":
            chosen = inside
        elif policy == "exclusive":
            chosen = inside if len(inside) == 1 else []
        else:
            # earliest trigger wins a tie
            chosen = [min(inside, key=lambda k: (abs(h.toa - triggers[k].timestamp), k))] if inside else []
        for k in chosen:
            out[k].append(i)
    return out


@pytest.mark.parametrize("policy", ["independent", "split_at_midpoint", "exclusive"])
@pytest.mark.parametrize("seed", range(5))
def test_policies_match_brute_force(policy, seed):
    rng = np.random.default_rng(seed)
    # trigger spacing well below the window length so most windows overlap
    stamps = np.cumsum(rng.integers(1, 15, size=30)).tolist()
    toas = np.sort(rng.integers(0, stamps[-1] + 40, size=400)).tolist()
    hits = _hits(*toas)
    triggers = _trig(*stamps)
    pre, post = int(rng.integers(0, 20)), int(rng.integers(0, 20))

    ex = WindowExtractor(WindowCfg(pre_window=pre, post_window=post, overlap_policy=policy))
    windows = ex.run(hits, triggers)

    assert [w.trigger.id for w in windows] == [t.id for t in triggers]
    assert [w.hit_ids for w in windows] == _brute_force_windows(hits, triggers, pre, post, policy)
    for w in windows:
        assert all(w.t_start <= h.toa <= w.t_end for h in w.hits)
