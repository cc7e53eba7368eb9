import zipfile

import httpx
import pytest

from fmusim.fmi2 import Fmi2Type, ModelBinding
from fmusim.instance import ModelInstance
from mock_model import MOCK_GUID, MockModel, mock_description

REFERENCE_FMUS_URL = "https://github.com/modelica/Reference-FMUs/releases/download/v0.0.39/Reference-FMUs-0.0.39.zip"


@pytest.fixture(scope="session")
def reference_fmus_dir(tmp_path_factory):
    """Download and extract Reference-FMUs once per test session."""
    tmpdir = tmp_path_factory.mktemp("reference_fmus")

    # Download the reference FMU zip file
    response = httpx.get(REFERENCE_FMUS_URL, follow_redirects=True)
    response.raise_for_status()

    zip_path = tmpdir / "Reference-FMUs.zip"
    with open(zip_path, "wb") as f:
        f.write(response.content)

    # Extract the zip file
    with zipfile.ZipFile(zip_path, "r") as zip_ref:
        zip_ref.extractall(tmpdir)

    return tmpdir


@pytest.fixture
def mock_model():
    return MockModel()


@pytest.fixture
def description():
    return mock_description()


@pytest.fixture
def binding(mock_model):
    return ModelBinding(
        mock_model, (Fmi2Type.MODEL_EXCHANGE, Fmi2Type.CO_SIMULATION)
    )


@pytest.fixture
def cs_instance(binding):
    instance = ModelInstance.instantiate(
        binding, "mock", Fmi2Type.CO_SIMULATION, MOCK_GUID, "file:///tmp"
    )
    yield instance
    instance.free_instance()


@pytest.fixture
def me_instance(binding):
    instance = ModelInstance.instantiate(
        binding, "mock", Fmi2Type.MODEL_EXCHANGE, MOCK_GUID, "file:///tmp"
    )
    yield instance
    instance.free_instance()
