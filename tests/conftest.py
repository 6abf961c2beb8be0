import pathlib
import dotenv
import pytest

from lectern import runtime
from lectern.store import MemoryStore

dotenv.load_dotenv(pathlib.Path(__file__).parent.parent / ".env")

DATA_DIR = pathlib.Path(__file__).parent / "data"


@pytest.fixture
def data_dir():
    return DATA_DIR


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def settings(tmp_path):
    return runtime.Settings(
        provider="assemblyai",
        assemblyai_api_key="test-key",
        max_concurrent=2,
        batch_pause=0.0,
        poll_interval=0.0,
        poll_attempts=3,
        data_dir=tmp_path,
    )
