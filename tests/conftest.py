import pytest
import torch


def pytest_report_header(config):
    return f"libaries: PyTorch {torch.__version__}"


def pytest_addoption(parser):
    """Add command-line option to specify a single GPU"""
    parser.addoption("--gpu-id", action="store", type=int, default=None, help="Specify a single GPU to use (e.g. --gpu-id=0)")


@pytest.fixture()
def gpu_device(request):
    """Returns the GPU device to test on, skipping the test if no GPU is available.
    Use a single specified GPU if --gpu-id is provided"""
    if torch.cuda.is_available():
        backend = "cuda"
    elif hasattr(torch, "xpu") and torch.xpu.is_available():
        backend = "xpu"
    else:
        pytest.skip("No GPU backend available")

    specific_gpu = request.config.getoption("--gpu-id")
    if specific_gpu is not None:
        return torch.device(f"{backend}:{specific_gpu}")
    return torch.device(backend)
