# ABOUTME: Shared pytest fixtures for the study-time test suite.
# ABOUTME: Loads the shipped policy YAML so tests exercise the real configuration path.

from pathlib import Path

import pytest

from src.common.config import load_engine_config

CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "effective_time.yaml"


@pytest.fixture
def engine_config():
    return load_engine_config(CONFIG_PATH)


@pytest.fixture
def config_path():
    return CONFIG_PATH
