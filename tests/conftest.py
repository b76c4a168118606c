import pytest

from refinery.audit_logger import AuditLog
from refinery.config_loader import RefineryConfig, StorageConfig
from refinery.storage import Database


@pytest.fixture
def config(tmp_path):
    return RefineryConfig(storage=StorageConfig(base_path=str(tmp_path / "data")))


@pytest.fixture
def audit(config):
    return AuditLog(config.data_path)


@pytest.fixture
def db(config, audit):
    return Database(config.data_path, audit=audit)
