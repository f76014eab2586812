import asyncio

from devhelper.metrics import Instrumentation, PeakSampler, metrics_markdown


async def test_peak_sampler_keeps_maximum():
    values = iter([3 * 1024 * 1024, 7 * 1024 * 1024, 2 * 1024 * 1024])
    last = [0]

    def probe():
        last[0] = next(values, last[0])
        return last[0]

    sampler = PeakSampler(probe, interval_ms=1)
    sampler.start()
    await asyncio.sleep(0.02)
    assert await sampler.stop() == 7.0


async def test_peak_sampler_without_readings():
    sampler = PeakSampler(lambda: None, interval_ms=1)
    sampler.start()
    assert await sampler.stop() is None


async def test_request_probe_counts_deltas():
    probe = Instrumentation(sampling_interval_ms=5, gpu_index=None).start()
    probe.mark_delta("Hel")
    probe.mark_delta("lo!")

    metrics = await probe.finish()

    assert metrics.deltas == 2
    assert metrics.chars == 6
    assert metrics.first_delta_s is not None
    assert metrics.elapsed_s >= metrics.first_delta_s
    assert metrics.ram_peak_mb > 0
    assert metrics.vram_peak_mb is None


def test_metrics_markdown():
    assert metrics_markdown(None) == "No metrics yet."
    text = metrics_markdown(
        {
            "elapsed_s": 1.5,
            "first_delta_s": None,
            "deltas": 3,
            "chars": 12,
            "ram_peak_mb": 100.0,
            "vram_peak_mb": None,
        }
    )
    assert "**elapsed_s:** 1.500" in text
    assert "**first_delta_s:** n/a" in text
    assert "**vram_peak_mb:** n/a" in text
