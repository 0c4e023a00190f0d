import random
from pathlib import Path

import pytest

from spectrum.schema import compute_schema_id, decode_sample, device_id_from_label
from spectrum.simulator import (
    BASE_BID_WEI,
    IoTDevice,
    SignalSimulator,
    bid_for_snr,
    interference_level_for_snr,
)
from spectrum.telemetry_log import JsonlTelemetryLog

PUBLISHER = "0x" + "33" * 20


class FixedRandom(random.Random):
    def __init__(self, values):
        super().__init__(0)
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


@pytest.mark.parametrize(
    "snr,multiplier",
    [(0, 10), (4, 10), (5, 5), (9, 5), (10, 2), (11, 2), (12, 1), (20, 1)],
)
def test_bid_tiers(snr, multiplier):
    assert bid_for_snr(snr) == BASE_BID_WEI * multiplier


@pytest.mark.parametrize(
    "snr,level",
    [(15, 0), (12, 1), (14, 1), (10, 2), (7, 3), (5, 4), (4, 5), (0, 5)],
)
def test_interference_levels(snr, level):
    assert interference_level_for_snr(snr) == level


def test_snr_noise_spike_and_microwave():
    # noise draw 0.5 -> +0, spike draw 0.5 -> none
    device = IoTDevice(number=1, rng=FixedRandom([0.5, 0.5, 0.5, 0.99, 0.5, 0.5, 0.0, 0.99]))
    assert device.measure_snr(0) == 15
    assert device.measure_snr(0) == 12

    device.trigger_microwave(now_ms=1_000, duration_ms=3_000)
    assert device.measure_snr(2_000) == 7
    assert device.measure_snr(4_000) == 10


def test_snr_is_floored_at_zero():
    device = IoTDevice(number=1, rng=FixedRandom([0.0, 0.99]), baseline_snr=2)
    device.trigger_microwave(now_ms=0)
    assert device.measure_snr(1) == 0


def test_publish_once_appends_one_record_per_device(tmp_path: Path):
    log = JsonlTelemetryLog(tmp_path / "telemetry.log")
    schema_id = compute_schema_id()
    log.register_schema(schema_id, "signal quality")
    simulator = SignalSimulator(
        log,
        PUBLISHER,
        num_devices=3,
        rng=random.Random(7),
        clock_ms=lambda: 1_730_000_000_000,
    )

    published = simulator.publish_once()

    assert len(published) == 3
    assert log.total(schema_id, PUBLISHER) == 3
    decoded = [decode_sample(log.get_at_index(schema_id, PUBLISHER, i)) for i in range(3)]
    assert decoded == published
    assert [sample.device_id for sample in decoded] == [
        device_id_from_label(f"device-{n}") for n in (1, 2, 3)
    ]
    for sample in decoded:
        assert sample.frequency_mhz == 2400
        assert sample.bid_price == bid_for_snr(sample.snr_db)
        assert sample.interference_level == interference_level_for_snr(sample.snr_db)


def test_publish_failure_is_logged_not_raised(tmp_path: Path):
    log = JsonlTelemetryLog(tmp_path / "telemetry.log")
    simulator = SignalSimulator(log, PUBLISHER, num_devices=2, rng=random.Random(1))

    assert simulator.publish_once() == []
