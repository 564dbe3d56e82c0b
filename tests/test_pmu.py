import pytest

from overseer.pmu import (
    PERF_TYPE_HARDWARE,
    PERF_TYPE_RAW,
    CounterSource,
    Event,
    Handle,
    HandleNotFoundError,
    PerfEncoding,
    UnknownEventsError,
    lookup_encodings,
)

ALL_EVENTS = [
    Event.INSTRUCTIONS,
    Event.CYCLES,
    Event.LLC_MISS,
    Event.L1_MISS,
    Event.DRAM_STALL,
]


def test_lookup_sapphire_rapids_encodings():
    encs = lookup_encodings("sapphire_rapids", ALL_EVENTS)
    assert encs[Event.INSTRUCTIONS] == PerfEncoding(PERF_TYPE_HARDWARE, 1)
    assert encs[Event.CYCLES] == PerfEncoding(PERF_TYPE_HARDWARE, 0)
    assert encs[Event.L1_MISS] == PerfEncoding(PERF_TYPE_RAW, 0x0800D1)
    assert encs[Event.LLC_MISS] == PerfEncoding(PERF_TYPE_RAW, 0x2000D1)
    assert encs[Event.DRAM_STALL] == PerfEncoding(PERF_TYPE_RAW, 0x0600A3)
    assert len(encs) == 5


def test_lookup_accepts_plain_strings():
    encs = lookup_encodings("sapphire_rapids", ["LLC_MISS"])
    assert encs["LLC_MISS"] == PerfEncoding(PERF_TYPE_RAW, 0x2000D1)


def test_unknown_uarch_lists_all_events():
    with pytest.raises(UnknownEventsError) as info:
        lookup_encodings("arm_neoverse_n1", ALL_EVENTS)
    assert info.value.uarch == "arm_neoverse_n1"
    assert info.value.missing == ALL_EVENTS


def test_unknown_events_on_known_uarch():
    with pytest.raises(UnknownEventsError) as info:
        lookup_encodings("sapphire_rapids", ["BRANCH_MISPRED", "STORE_FORWARD_BLOCK"])
    assert info.value.uarch == "sapphire_rapids"
    assert info.value.missing == ["BRANCH_MISPRED", "STORE_FORWARD_BLOCK"]
    assert str(info.value) == (
        'pmu: uarch "sapphire_rapids" has no encoding for: BRANCH_MISPRED, STORE_FORWARD_BLOCK'
    )


def test_mixed_known_and_unknown_lists_only_missing():
    mixed = [Event.INSTRUCTIONS, "MYSTERY_COUNTER", Event.CYCLES, "ANOTHER_MISSING"]
    with pytest.raises(UnknownEventsError) as info:
        lookup_encodings("sapphire_rapids", mixed)
    assert info.value.missing == ["MYSTERY_COUNTER", "ANOTHER_MISSING"]


def test_event_names_appear_in_error_and_lookup():
    assert str(Event.DRAM_STALL) == "DRAM_STALL"
    encs = lookup_encodings("sapphire_rapids", [Event.CYCLES])
    assert encs["CYCLES"] == PerfEncoding(PERF_TYPE_HARDWARE, 0)
    with pytest.raises(UnknownEventsError) as info:
        lookup_encodings("unknown", [Event.DRAM_STALL, Event.CYCLES])
    assert str(info.value) == 'pmu: uarch "unknown" has no encoding for: DRAM_STALL, CYCLES'


def test_handle_not_found_error():
    err = HandleNotFoundError()
    assert str(err) == "pmu: handle not found"
    assert isinstance(err, LookupError)


def test_handles_compare_by_id():
    assert Handle(1) == Handle(1)
    assert {Handle(2): "b"}[Handle(2)] == "b"
    assert Handle(1) != Handle(2)


def test_counter_source_is_abstract():
    with pytest.raises(TypeError):
        CounterSource()