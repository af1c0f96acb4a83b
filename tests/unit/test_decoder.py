import types

import numpy as np
import pytest
from packet_factory import make_dual_packet, make_hdl64e_dual_packet, make_packet

from velodecode import (
    CalibrationEntry,
    CalibrationError,
    CalibrationTable,
    Decoder,
    DecodeError,
    InvalidChannel,
    MalformedPacket,
    PointRecord,
    ReturnType,
    SensorModel,
    UnsupportedModel,
    decode_packets_parallel,
    iter_turns,
    records_to_array,
)
from velodecode.packet_data_structure import BlockFlag, ProductId, ReturnMode, dtype_point_record


def flat_calibration(count: int = 32, **kwargs) -> CalibrationTable:
    entry = CalibrationEntry(**{"vertical_angle_deg": 0.0, **kwargs})
    return CalibrationTable(entries=(entry,) * count)


def test_unsupported_model() -> None:
    with pytest.raises(UnsupportedModel):
        Decoder("HDL-128")
    with pytest.raises(UnsupportedModel):
        Decoder(None)


@pytest.mark.parametrize("name", ["HDL-32E", "hdl32e", "HDL32E", SensorModel.HDL32E])
def test_model_names(name) -> None:
    assert Decoder(name).sensor_model == SensorModel.HDL32E


def test_calibration_must_match_channel_count() -> None:
    with pytest.raises(CalibrationError):
        Decoder(SensorModel.HDL32E, calibration=flat_calibration(16))


def test_decode_is_lazy_and_typed() -> None:
    points = Decoder(SensorModel.HDL32E).decode(make_packet())
    assert isinstance(points, types.GeneratorType)
    first = next(points)
    assert isinstance(first, PointRecord)
    assert first.return_type == ReturnType.STRONGEST
    assert len(list(points)) == 12 * 32 - 1


def test_wrong_length_raises_and_yields_nothing() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    with pytest.raises(MalformedPacket):
        decoder.decode(make_packet()[:-1])
    assert list(decoder.decode_stream([make_packet()[:-1]])) == []


def test_point_count_matches_non_zero_samples() -> None:
    rng = np.random.default_rng(4)
    distances = rng.integers(1, 20000, size=(12, 32))
    distances[rng.random((12, 32)) < 0.3] = 0
    points = Decoder(SensorModel.HDL32E).decode_array(make_packet(distances=distances))

    assert len(points) == np.count_nonzero(distances)
    assert np.all(points["distance"] > 0)
    assert points.dtype == dtype_point_record


def test_zero_distance_samples_are_dropped() -> None:
    distances = np.full((12, 32), 2500)
    distances[:, 5] = 0
    points = Decoder(SensorModel.HDL32E).decode_array(make_packet(distances=distances))
    assert 5 not in set(points["channel"].tolist())
    assert len(points) == 12 * 31


def test_azimuth_interpolated_halfway_through_firing() -> None:
    packet = make_packet(azimuths_deg=np.arange(12) * 10.0)
    points = Decoder(SensorModel.HDL32E).decode_array(packet)

    channel_20 = points[(points["block"] == 0) & (points["channel"] == 20)]
    assert channel_20["azimuth"][0] == pytest.approx(5.0)
    # the last block extrapolates with the previous delta
    last = points[(points["block"] == 11) & (points["channel"] == 20)]
    assert last["azimuth"][0] == pytest.approx(115.0)


def test_azimuth_non_decreasing_with_single_wrap() -> None:
    packet = make_packet(azimuths_deg=359.0 + np.arange(12) * 0.2)
    points = Decoder(SensorModel.HDL32E).decode_array(packet)
    assert np.all((points["azimuth"] >= 0) & (points["azimuth"] < 360))
    diffs = np.diff(points["azimuth"])
    assert np.count_nonzero(diffs < 0) == 1


def test_decode_is_deterministic() -> None:
    decoder = Decoder(SensorModel.VLP16)
    rng = np.random.default_rng(0)
    packet = make_packet(
        distances=rng.integers(0, 30000, size=(12, 32)),
        reflectivities=rng.integers(0, 255, size=(12, 32)),
        product_id=ProductId.VLP16,
    )
    assert list(decoder.decode(packet)) == list(decoder.decode(packet))
    np.testing.assert_array_equal(decoder.decode_array(packet), decoder.decode_array(packet))


def test_hdl32e_projection_and_timestamps() -> None:
    packet = make_packet(distances=5000, timestamp_us=2_000_000)
    records = list(Decoder(SensorModel.HDL32E).decode(packet))
    table = CalibrationTable.for_model(SensorModel.HDL32E)

    for record in records[:64]:
        assert record.distance == pytest.approx(10.0)
        assert record.timestamp == pytest.approx(
            2_000_000 + 46.08 * record.block + 1.152 * record.channel
        )
        vertical = np.radians(table.entry_for(record.channel).vertical_angle_deg)
        azimuth = np.radians(record.azimuth)
        assert record.x == pytest.approx(10.0 * np.cos(vertical) * np.sin(azimuth))
        assert record.y == pytest.approx(10.0 * np.cos(vertical) * np.cos(azimuth))
        assert record.z == pytest.approx(10.0 * np.sin(vertical))

    horizontal = [r for r in records if r.channel == 15]
    assert all(r.z == pytest.approx(0.0) for r in horizontal)


def test_vlp16_two_firing_sequences_per_block() -> None:
    packet = make_packet(distances=5000, timestamp_us=0, product_id=ProductId.VLP16)
    points = Decoder(SensorModel.VLP16).decode_array(packet)

    assert len(points) == 12 * 32
    slot = np.tile(np.arange(32), 12)
    block = np.repeat(np.arange(12), 32)
    np.testing.assert_array_equal(points["channel"], slot % 16)
    np.testing.assert_allclose(
        points["timestamp"], 110.592 * block + 55.296 * (slot // 16) + 2.304 * (slot % 16)
    )
    # channel 0 is at -15 degrees and mounted 11.2 mm above the optical center
    first = points[0]
    assert first["z"] == pytest.approx(
        10.0 * np.sin(np.radians(-15.0)) + 0.0112 * np.cos(np.radians(-15.0))
    )


def test_lower_bank_on_hdl32e_is_invalid_channel_for_that_packet_only() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    flags = np.full(12, BlockFlag.UPPER_BANK.value)
    flags[7] = BlockFlag.LOWER_BANK.value
    bad = make_packet(flags=flags)
    good = make_packet(distances=1234)

    with pytest.raises(InvalidChannel):
        decoder.decode(bad)
    points = records_to_array(decoder.decode_stream([bad, good]))
    np.testing.assert_array_equal(points, decoder.decode_array(good))
    with pytest.raises(DecodeError):
        list(decoder.decode_stream([good, bad], skip_errors=False))


def test_dual_return_emits_both_returns() -> None:
    packet = make_dual_packet(last_distances=2000, strongest_distances=1000)
    points = Decoder(SensorModel.HDL32E).decode_array(packet)

    assert len(points) == 6 * 32 * 2
    np.testing.assert_array_equal(points["return_index"][:4], [1, 2, 1, 2])
    np.testing.assert_array_equal(points["channel"][:4], [0, 0, 1, 1])
    np.testing.assert_allclose(points["distance"][:2], [2.0, 4.0])
    assert points["return_type"][0] == ReturnType.STRONGEST
    assert points["return_type"][1] == ReturnType.LAST
    assert np.all(points["num_returns"] == 2)
    # both echoes come from the same firing
    np.testing.assert_array_equal(points["timestamp"][0::2], points["timestamp"][1::2])
    np.testing.assert_array_equal(points["azimuth"][0::2], points["azimuth"][1::2])
    assert np.all(np.diff(points["azimuth"]) >= 0)


def test_dual_return_identical_distances_collapse_for_every_channel() -> None:
    packet = make_dual_packet(
        last_distances=1500,
        strongest_distances=1500,
        reflectivities=np.tile([[10], [20]], (6, 1)),
    )
    points = Decoder(SensorModel.HDL32E).decode_array(packet)

    assert len(points) == 6 * 32
    np.testing.assert_array_equal(points["channel"], np.tile(np.arange(32), 6))
    assert np.all(points["return_type"] == ReturnType.LAST_AND_STRONGEST)
    assert np.all(points["return_index"] == 1)
    assert np.all(points["num_returns"] == 1)
    assert np.all(points["reflectivity"] == 10)
    np.testing.assert_array_equal(points["block"], np.repeat(np.arange(0, 12, 2), 32))


def test_dual_return_on_vlp16_uses_block_pairs_for_timing() -> None:
    packet = make_dual_packet(
        last_distances=3000, strongest_distances=1000, timestamp_us=0, product_id=ProductId.VLP16
    )
    points = Decoder(SensorModel.VLP16).decode_array(packet)
    assert len(points) == 12 * 32
    pair = points[points["block"] // 2 == 1]
    assert pair["timestamp"].min() == pytest.approx(110.592)


def test_hdl64e_upper_and_lower_banks() -> None:
    flags = [BlockFlag.UPPER_BANK, BlockFlag.LOWER_BANK] * 6
    packet = make_packet(
        flags=flags, azimuths_deg=np.repeat(np.arange(6) * 0.2, 2), distances=4000
    )
    points = Decoder(SensorModel.HDL64E).decode_array(packet)

    assert len(points) == 12 * 32
    assert set(points["channel"].tolist()) == set(range(64))
    np.testing.assert_array_equal(points["channel"][:4], [0, 32, 1, 33])
    np.testing.assert_array_equal(points["timestamp"][0::2], points["timestamp"][1::2])
    assert np.all(np.diff(points["azimuth"]) >= 0)


def assert_timestamps_follow_offset_table(decoder, packet, mode, timestamp_us) -> None:
    points = decoder.decode_array(packet)
    expected = [
        decoder.timing.offset_us(
            int(point["block"]), int(point["channel"]), int(point["return_index"]) - 1, mode=mode
        )
        for point in points
    ]
    np.testing.assert_allclose(points["timestamp"] - timestamp_us, expected, atol=1e-9)


def test_hdl64e_timestamps_follow_offset_table() -> None:
    flags = [BlockFlag.UPPER_BANK, BlockFlag.LOWER_BANK] * 6
    packet = make_packet(
        flags=flags, azimuths_deg=np.repeat(np.arange(6) * 0.2, 2), timestamp_us=0
    )
    decoder = Decoder(SensorModel.HDL64E)
    assert decoder.timing.offset_us(1, 32) == pytest.approx(0.0)
    assert decoder.timing.offset_us(3, 37) == pytest.approx(decoder.timing.offset_us(2, 5))
    assert_timestamps_follow_offset_table(decoder, packet, ReturnMode.STRONGEST, 0)


def test_dual_return_timestamps_follow_offset_table() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    assert decoder.timing.offset_us(3, 0, mode=ReturnMode.DUAL) == pytest.approx(46.08)
    packet = make_dual_packet(last_distances=2000, strongest_distances=1000, timestamp_us=500)
    assert_timestamps_follow_offset_table(decoder, packet, ReturnMode.DUAL, 500)

    hdl64e = Decoder(SensorModel.HDL64E)
    assert hdl64e.timing.offset_us(7, 40, mode=ReturnMode.DUAL) == pytest.approx(48.0 + 8 * 1.5)
    packet = make_hdl64e_dual_packet(last_distances=2000, strongest_distances=1000, timestamp_us=0)
    assert_timestamps_follow_offset_table(hdl64e, packet, ReturnMode.DUAL, 0)


def test_hdl64e_dual_return_emits_both_returns_of_both_banks() -> None:
    packet = make_hdl64e_dual_packet(last_distances=2000, strongest_distances=1000)
    decoder = Decoder(SensorModel.HDL64E)
    assert decoder.parse(packet).footer.return_mode == ReturnMode.DUAL
    points = decoder.decode_array(packet)

    assert len(points) == 3 * 64 * 2
    np.testing.assert_array_equal(points["channel"][:8], [0, 0, 32, 32, 1, 1, 33, 33])
    np.testing.assert_array_equal(points["return_index"][:4], [1, 2, 1, 2])
    np.testing.assert_array_equal(points["block"][:4], [2, 0, 3, 1])
    np.testing.assert_allclose(points["distance"][:2], [2.0, 4.0])
    assert np.all(points["num_returns"] == 2)
    samples = set(zip(points["channel"].tolist(), points["return_index"].tolist()))
    assert len(samples) == 64 * 2
    assert np.all(np.diff(points["azimuth"]) >= 0)


def test_hdl64e_dual_return_identical_distances_collapse() -> None:
    packet = make_hdl64e_dual_packet(last_distances=1500, strongest_distances=1500)
    points = Decoder(SensorModel.HDL64E).decode_array(packet)

    assert len(points) == 3 * 64
    assert set(points["channel"].tolist()) == set(range(64))
    assert np.all(points["return_type"] == ReturnType.LAST_AND_STRONGEST)
    assert np.all(points["return_index"] == 1)
    # the last return blocks are the first bank pair of each firing
    assert set((points["block"] % 4).tolist()) == {0, 1}


def test_rotational_correction_and_horizontal_offset() -> None:
    calibration = flat_calibration(rotational_correction_deg=90.0, horizontal_offset_m=0.1)
    decoder = Decoder(SensorModel.HDL32E, calibration=calibration)
    for record in list(decoder.decode(make_packet(distances=5000)))[:32]:
        beta = np.radians(record.azimuth - 90.0)
        assert record.x == pytest.approx(10.0 * np.sin(beta) - 0.1 * np.cos(beta))
        assert record.y == pytest.approx(10.0 * np.cos(beta) + 0.1 * np.sin(beta))


@pytest.mark.parametrize("raw_distance, expected", [(15000, 30.5), (5000, 10.5)])
def test_distance_correction(raw_distance, expected) -> None:
    calibration = flat_calibration(
        distance_correction_m=0.5, distance_correction_x_m=0.5, distance_correction_y_m=0.5
    )
    decoder = Decoder(SensorModel.HDL32E, calibration=calibration)
    points = decoder.decode_array(make_packet(distances=raw_distance))
    np.testing.assert_allclose(points["distance"], expected)
    np.testing.assert_allclose(np.hypot(points["x"], points["y"]), expected)


def test_near_range_distance_correction_interpolates() -> None:
    calibration = flat_calibration(
        distance_correction_m=1.0, distance_correction_x_m=0.5, distance_correction_y_m=0.5
    )
    decoder = Decoder(SensorModel.HDL32E, calibration=calibration)
    far = decoder.decode_array(make_packet(distances=20000))
    near = decoder.decode_array(make_packet(azimuths_deg=np.zeros(12), distances=1000))

    np.testing.assert_allclose(np.hypot(far["x"], far["y"]), 41.0)
    np.testing.assert_allclose(near["distance"], 3.0)
    # pointing straight down y, so only the y correction is interpolated
    expected_y = 2.0 + 0.5 + 0.5 * (3.0 - 1.93) / (25.04 - 1.93)
    np.testing.assert_allclose(near["y"], expected_y)
    np.testing.assert_allclose(near["x"], 0.0, atol=1e-12)


def test_focal_intensity_compensation() -> None:
    calibration = flat_calibration(focal_slope=1.0, focal_distance_m=0.0, min_intensity=10)
    decoder = Decoder(SensorModel.HDL32E, calibration=calibration)
    points = decoder.decode_array(make_packet(distances=5000, reflectivities=100))

    t2 = 1.0 - 5000 / 65535.0
    expected = int(np.clip(90.0 + 256.0 * abs(1.0 - t2 * t2), 0, 255))
    assert np.all(points["intensity"] == expected)
    assert np.all(points["reflectivity"] == 100)

    plain = Decoder(SensorModel.HDL32E).decode_array(make_packet(reflectivities=100))
    assert np.all(plain["intensity"] == 100)


def test_intensity_limits_apply_without_focal_slope() -> None:
    packet = make_packet(reflectivities=100)
    calibration = flat_calibration(min_intensity=10)
    points = Decoder(SensorModel.HDL32E, calibration=calibration).decode_array(packet)
    assert np.all(points["intensity"] == 90)
    assert np.all(points["reflectivity"] == 100)

    calibration = flat_calibration(max_intensity=50)
    points = Decoder(SensorModel.HDL32E, calibration=calibration).decode_array(packet)
    assert np.all(points["intensity"] == 50)

    calibration = flat_calibration(min_intensity=120)
    points = Decoder(SensorModel.HDL32E, calibration=calibration).decode_array(packet)
    assert np.all(points["intensity"] == 0)


def rotating_packets(count: int):
    # each packet advances 30 degrees, blocks 2 degrees apart
    for k in range(count):
        yield make_packet(azimuths_deg=(k * 30.0 + np.arange(12) * 2.0) % 360.0)


def test_iter_turns_splits_on_wrap() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    turns = list(iter_turns(decoder, rotating_packets(26)))
    assert [len(turn) for turn in turns] == [13 * 384, 12 * 384]

    turns = list(iter_turns(decoder, rotating_packets(26), include_partial=True))
    assert [len(turn) for turn in turns] == [13 * 384, 12 * 384, 384]


def test_iter_turns_at_custom_split_skips_bad_packets() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    packets = list(rotating_packets(14))
    packets.insert(3, b"not a packet")
    turns = list(iter_turns(decoder, packets, split_azimuth_deg=95.0))
    # 0, 30, 60, 90 then 120 crosses 95 degrees
    assert [len(turn) for turn in turns] == [5 * 384]
    with pytest.raises(MalformedPacket):
        list(iter_turns(decoder, packets, skip_errors=False))


def test_decode_packets_parallel_keeps_order() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    packets = [make_packet(distances=d) for d in (1000, 2000, 3000)]
    packets.insert(1, b"\x00" * 10)
    results = list(decode_packets_parallel(decoder, packets, max_workers=4))

    assert [seq for seq, _ in results] == [0, 1, 2, 3]
    assert isinstance(results[1][1], MalformedPacket)
    for (_, points), distance in zip([results[0], results[2], results[3]], (2.0, 4.0, 6.0)):
        np.testing.assert_allclose(points["distance"], distance)


def test_decode_packets_parallel_reads_source_lazily() -> None:
    decoder = Decoder(SensorModel.HDL32E)
    packet = make_packet()
    pulled = []

    def packets():
        for k in range(2000):
            pulled.append(k)
            yield packet

    results = decode_packets_parallel(decoder, packets(), max_workers=2)
    sequence_number, points = next(results)
    assert sequence_number == 0
    assert len(points) == 12 * 32
    # four in flight plus the one waiting for a free slot
    assert len(pulled) <= 2 * 2 + 1
    results.close()
    assert len(pulled) < 2000


def test_decode_packets_parallel_rejects_zero_workers() -> None:
    with pytest.raises(ValueError):
        next(decode_packets_parallel(Decoder(SensorModel.HDL32E), [make_packet()], max_workers=0))
