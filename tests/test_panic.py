import pytest

from kernmem.panic import AssertionFailure, KernelPanic, format_memory_dump, kassert


def test_kassert_failure_carries_location():
    with pytest.raises(AssertionFailure) as info:
        kassert(1 == 2, "1 == 2", "mm.c", 42)
    err = info.value
    assert (err.expr, err.file, err.line) == ("1 == 2", "mm.c", 42)
    assert str(err) == "Assertion failed:mm.c:42: 1 == 2"


def test_assertion_failure_is_a_panic():
    with pytest.raises(KernelPanic):
        kassert(0, "ptr", "x.c", 1)


def test_kassert_passes_on_truth():
    results = [kassert(value, "v", "f.c", 3) for value in (1, "x", [0])]
    assert results == [None, None, None]


def _tokens(dump):
    return [t for t in dump.split() if not t.endswith(":")]


def test_memory_dump_lists_bytes_from_top_down():
    data = bytes(range(0x0C, 0x1C))
    dump = format_memory_dump(data, 0x2000)
    assert _tokens(dump) == [f"{b:02x}" for b in reversed(data)]
    assert dump.endswith("\n")


def test_memory_dump_marks_unaligned_start():
    dump = format_memory_dump(b"\x01\x02\x03", 0x4003)
    assert "0x00004003:\t" in dump
    assert _tokens(dump) == ["03", "02", "01"]


def test_memory_dump_empty():
    assert format_memory_dump(b"", 0x1000) == ""