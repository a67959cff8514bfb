"""Tests for shimlink/driver.py: bitmap, rate quantization, configure order."""

from __future__ import annotations

import pytest

from shimlink.config import DeviceConfig, SensorFlags
from shimlink.driver import SensorBitmap, configure_driver, quantize_sampling_rate, sensor_bitmap
from shimlink.mocks import MockClock, MockFirmwareDriver

ALL_OFF = SensorFlags(**{name: False for name in (
    "low_noise_accelerometer", "wide_range_accelerometer", "gyroscope", "magnetometer",
    "pressure_temperature", "battery", "ext_a6", "ext_a7", "ext_a15", "exg",
)})


class TestQuantizeSamplingRate:
    def test_50hz(self):
        divider, applied = quantize_sampling_rate(50.0)
        assert divider == 655
        assert applied == pytest.approx(32768.0 / 655)
        assert applied == pytest.approx(50.0275, abs=1e-4)

    def test_exact_rate(self):
        assert quantize_sampling_rate(51.2) == (640, 51.2)

    def test_very_high_rate_floors_divider(self):
        divider, applied = quantize_sampling_rate(100000.0)
        assert divider == 1
        assert applied == 32768.0

    @pytest.mark.parametrize("hz", [0, -1.0])
    def test_rejects_non_positive(self, hz):
        with pytest.raises(ValueError):
            quantize_sampling_rate(hz)


class TestSensorBitmap:
    def test_all_off(self):
        assert sensor_bitmap(ALL_OFF) == 0

    def test_default_flags(self):
        bitmap = sensor_bitmap(SensorFlags())
        assert bitmap & SensorBitmap.A_ACCEL
        assert bitmap & SensorBitmap.VBATT
        assert bitmap & SensorBitmap.BMP180_PRESSURE
        assert not bitmap & SensorBitmap.EXG1_24BIT

    def test_exg_sets_both_chips(self):
        flags = SensorFlags(**{**ALL_OFF.__dict__, "exg": True})
        assert sensor_bitmap(flags) == SensorBitmap.EXG1_24BIT | SensorBitmap.EXG2_24BIT

    def test_single_sensor(self):
        flags = SensorFlags(**{**ALL_OFF.__dict__, "gyroscope": True})
        assert sensor_bitmap(flags) == 0x40


class TestConfigureDriver:
    def test_command_order(self):
        driver = MockFirmwareDriver()
        clock = MockClock()
        cfg = DeviceConfig(sampling_rate=50.0, accel_range=2, gyro_range=1, mag_range=3)
        applied = configure_driver(driver, cfg, clock.sleep)

        assert applied == pytest.approx(32768.0 / 655)
        assert driver.call_names() == [
            "stop_streaming",
            "write_sensors",
            "write_sampling_rate",
            "write_accel_range",
            "write_gyro_range",
            "write_mag_range",
            "set_low_power_accel",
            "set_low_power_gyro",
            "set_low_power_mag",
            "write_internal_exp_power",
            "write_sensors",
            "inquiry",
            "read_calibration_parameters",
        ]
        assert driver.calls[1] == ("write_sensors", (0,))
        assert driver.calls[2] == ("write_sampling_rate", (applied,))
        assert driver.calls[3] == ("write_accel_range", (2,))
        assert driver.calls[10] == ("write_sensors", (sensor_bitmap(cfg.sensors),))
        assert driver.calls[-1] == ("read_calibration_parameters", ("All",))
        assert clock.total_slept == pytest.approx(0.15 + 0.15 + 0.18 + 0.15 + 0.18 + 0.35 + 0.25)

    def test_exg_bytes_written_when_both_present(self):
        driver = MockFirmwareDriver()
        cfg = DeviceConfig(exg_chip1=bytes(10), exg_chip2=bytes(range(10)))
        configure_driver(driver, cfg, MockClock().sleep)
        assert ("write_exg_configuration", (bytes(10), bytes(range(10)))) in driver.calls

    def test_exg_bytes_skipped_when_one_missing(self):
        driver = MockFirmwareDriver()
        cfg = DeviceConfig(exg_chip1=bytes(10))
        configure_driver(driver, cfg, MockClock().sleep)
        assert "write_exg_configuration" not in driver.call_names()
