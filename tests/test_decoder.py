from __future__ import annotations

import random
from datetime import datetime, timezone

from leakbench.device.decoder import LineDecoder


def _decode_all(chunks: list[str | bytes]) -> list[int]:
    decoder = LineDecoder()
    values: list[int] = []
    for chunk in chunks:
        values.extend(decoder.feed(chunk))
    return values


def test_split_line_is_joined_across_chunks():
    assert _decode_all(["12\n3", "4\n56\n"]) == [12, 34, 56]


def test_chunk_boundaries_do_not_change_output():
    stream = "101\n7\nboot v1.2\n\n1023\n0\n\r\n512\r\n 42 \nxyz\n88\n"
    expected = _decode_all([stream])
    assert expected == [101, 7, 1023, 0, 512, 42, 88]

    rng = random.Random(7)
    for _ in range(50):
        cuts = sorted(rng.sample(range(1, len(stream)), rng.randint(1, 12)))
        pieces = [stream[a:b] for a, b in zip([0] + cuts, cuts + [len(stream)])]
        assert _decode_all(pieces) == expected


def test_noise_lines_are_counted_as_dropped():
    decoder = LineDecoder()
    assert decoder.feed(b"hello\n15\n\n-\n") == [15]
    stats = decoder.stats()
    assert stats == {"lines": 4, "samples": 1, "dropped": 3}


def test_incomplete_tail_stays_pending_until_reset():
    decoder = LineDecoder()
    assert decoder.feed("99") == []
    assert decoder.pending == "99"
    decoder.reset()
    assert decoder.pending == ""
    assert decoder.feed("1\n") == [1]


def test_decode_stamps_samples_per_chunk():
    stamps = iter(
        [
            datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc),
            datetime(2024, 1, 1, 0, 0, 1, tzinfo=timezone.utc),
        ]
    )
    decoder = LineDecoder()
    samples = list(decoder.decode([b"1\n2\n", b"", b"3\n"], clock=lambda: next(stamps)))
    assert [s.value for s in samples] == [1, 2, 3]
    assert samples[0].timestamp == samples[1].timestamp
    assert samples[2].timestamp.second == 1


def test_only_plain_digit_lines_are_samples():
    decoder = LineDecoder()
    values = decoder.feed(b"1\xff2\n1_000\n+7\n-3\n\xd9\xa3\n250\n")
    assert values == [250]
    assert decoder.stats() == {"lines": 6, "samples": 1, "dropped": 5}


def test_invalid_byte_split_across_chunks_still_drops_line():
    assert _decode_all([b"1\xff", b"2\n40\n"]) == [40]
