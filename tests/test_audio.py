import asyncio
import math

import numpy as np
import pytest

from varanny.audio import (
    AudioDevice,
    AudioLevelMonitor,
    compute_dbfs,
    compute_rms,
    find_audio_device,
    list_capture_devices,
    sanitize,
    similarity,
)
from varanny.errors import DeviceNotFound

def test_silence_is_clipped_to_floor():
    assert compute_dbfs(np.zeros(4410, dtype=np.int16)) == -96.0
    assert compute_dbfs(np.zeros(0, dtype=np.int16)) == -96.0

def test_full_scale_sine_level():
    t = np.arange(4410) / 44100.0
    samples = (32767 * np.sin(2 * np.pi * 1000 * t)).astype(np.int16)

    values = samples.astype(np.float64)
    rms = math.sqrt(float(np.sum(values * values)) / len(values))
    expected = 20 * math.log10(rms / 32768)

    assert compute_dbfs(samples) == pytest.approx(expected, abs=1e-9)
    # a full scale sine sits about 3 dB below full scale
    assert compute_dbfs(samples) == pytest.approx(-3.01, abs=0.05)

def test_rms_does_not_overflow_int16():
    samples = np.full(100, -32768, dtype=np.int16)
    assert compute_rms(samples) == pytest.approx(32768.0)
    assert compute_dbfs(samples) == pytest.approx(0.0)

def test_sanitize():
    assert sanitize("Microphone (USB Audio CODEC )") == "microphoneusbaudiocodec"
    assert sanitize("  --  ") == ""

def test_similarity_counts_edits_over_longest_name():
    assert similarity("kitten", "sitting") == pytest.approx(1 - 3 / 7)
    assert similarity("VARA-HF", "varahf") == 1.0

def test_similarity_of_normalized_names():
    assert similarity("Microphone (USB Audio CODEC )", "microphoneusbaudiocodec") == 1.0

def test_similarity_of_empty_names():
    assert similarity("", "") == 1.0
    assert similarity("()", " - ") == 1.0
    assert similarity("", "abc") == 0.0

@pytest.mark.parametrize("a,b", [
    ("Microphone (USB Audio CODEC )", "Line In (Realtek Audio)"),
    ("abc", "xyzxyzxyz"),
    ("hw:1,0", "USB PnP Sound Device"),
])
def test_similarity_is_bounded(a, b):
    assert 0.0 <= similarity(a, b) <= 1.0

def test_find_audio_device_returns_first_match():
    devices = [
        AudioDevice(0, "Line In (Realtek Audio)"),
        AudioDevice(3, "Microphone (USB Audio CODEC)"),
        AudioDevice(5, "Microphone (2- USB Audio CODEC )"),
    ]
    device = find_audio_device("Microphone (USB Audio CODEC )", 0.7, devices)
    assert device.index == 3

def test_find_audio_device_honours_threshold():
    devices = [AudioDevice(0, "Microphone (2- USB Audio CODEC )")]
    assert find_audio_device("Microphone (USB Audio CODEC )", 0.7, devices).index == 0
    with pytest.raises(DeviceNotFound) as exc:
        find_audio_device("Microphone (USB Audio CODEC )", 1.0, devices)
    assert str(exc.value) == "audio device 'Microphone (USB Audio CODEC )' not found"

def test_capture_devices_skip_outputs(fake_sounddevice):
    devices = list_capture_devices()
    assert devices == [AudioDevice(1, "Microphone (USB Audio CODEC )")]

@pytest.mark.asyncio
async def test_monitor_streams_levels_until_stopped(fake_sounddevice):
    levels = asyncio.Queue(maxsize=32)
    monitor = AudioLevelMonitor(AudioDevice(1, "Microphone (USB Audio CODEC )"), levels)
    task = asyncio.create_task(monitor.run())

    first = await asyncio.wait_for(levels.get(), 5)
    assert first == pytest.approx(20 * math.log10(1000 / 32768))

    monitor.stop()
    await asyncio.wait_for(task, 5)

    stream = fake_sounddevice.InputStream.opened[0]
    assert stream.closed
    assert monitor.closed.is_set()
    assert stream.channels == 1
    assert stream.samplerate == 44100
    assert stream.dtype == "int16"
    assert stream.blocksize == 4410

@pytest.mark.asyncio
async def test_monitor_blocks_on_full_queue_and_still_stops(fake_sounddevice):
    levels = asyncio.Queue(maxsize=2)
    monitor = AudioLevelMonitor(AudioDevice(1, "Microphone"), levels)
    task = asyncio.create_task(monitor.run())

    # nobody reads: the producer waits instead of dropping levels
    await asyncio.sleep(0.3)
    assert levels.qsize() == 2
    assert not task.done()

    monitor.stop()
    await asyncio.wait_for(task, 5)
    assert fake_sounddevice.InputStream.opened[0].closed
