"""Basic smoke tests for dosscan."""

from dosscan import __version__
from dosscan.config import settings


def test_version():
    """Test version is defined."""
    assert __version__ == "0.1.0"


def test_settings_load():
    """Test settings can be loaded."""
    assert settings.log_format in ["json", "console"]
    assert settings.transfer_stipend == 2300
    assert settings.max_source_bytes > 0
