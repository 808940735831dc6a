"""
Tests for GPU hardware detection and the thread-owned compute context.
"""

import threading

import numpy as np
import pytest

from scan_registration.acceleration.gpu_context import GPUContext
from scan_registration.acceleration.hardware_detection import (
    GPUInfo,
    detect_gpu,
    get_gpu_info,
    check_gpu_memory,
    clear_gpu_cache,
)
from scan_registration.exceptions import GPUContextError


def test_detect_gpu():
    """Test GPU detection returns valid GPUInfo."""
    info = detect_gpu()

    assert isinstance(info, GPUInfo)
    assert isinstance(info.available, bool)
    assert info.device_count >= 0

    if info.available:
        assert info.device_count > 0
        assert info.device_name is not None
        assert info.memory_gb is not None and info.memory_gb > 0
        assert len(info.compute_capability) == 2
        assert info.error_message is None
    else:
        assert info.device_count == 0
        assert info.error_message is not None


def test_get_gpu_info_caching():
    """Test that get_gpu_info() returns cached result."""
    clear_gpu_cache()

    info1 = get_gpu_info()
    info2 = get_gpu_info()

    assert info1 is info2

    clear_gpu_cache()


def test_get_gpu_info_from_many_threads():
    clear_gpu_cache()
    seen = []

    def worker():
        seen.append(get_gpu_info())

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(seen) == 8
    assert all(info is seen[0] for info in seen)


def test_check_gpu_memory():
    """Memory check never raises and reports a boolean."""
    has_memory, available_gb = check_gpu_memory(1.0)

    assert isinstance(has_memory, bool)
    if has_memory:
        assert available_gb is not None and available_gb >= 1.0


def test_cpu_context_uses_numpy():
    ctx = GPUContext(use_gpu=False, name="cpu")

    assert ctx.xp is np
    assert not ctx.is_gpu
    arr = ctx.full((2, 3), np.nan)
    assert isinstance(ctx.to_cpu(arr), np.ndarray)
    assert np.all(np.isnan(ctx.to_cpu(arr)))
    assert ctx.zeros((4,)).sum() == 0
    assert "numpy" in repr(ctx)


def test_context_is_bound_to_creating_thread():
    ctx = GPUContext(use_gpu=False, name="owned")
    errors = []

    def intrude():
        try:
            ctx.asarray([1.0, 2.0])
        except GPUContextError as e:
            errors.append(e)

    t = threading.Thread(target=intrude, name="other")
    t.start()
    t.join()

    assert ctx.is_owner()
    assert ctx.owner_thread_name == threading.current_thread().name
    assert len(errors) == 1
    assert "owned" in str(errors[0])


def test_disable_gpu_falls_back_to_numpy():
    ctx = GPUContext(use_gpu=True, name="fallback")
    ctx.disable_gpu("test")

    assert ctx.xp is np
    assert not ctx.is_gpu


@pytest.mark.skipif(
    not get_gpu_info().available,
    reason="GPU not available"
)
def test_gpu_compute_capability():
    """Test GPU compute capability is valid (requires GPU)."""
    info = get_gpu_info()

    major, minor = info.compute_capability
    assert major >= 3
    assert 0 <= minor <= 9
