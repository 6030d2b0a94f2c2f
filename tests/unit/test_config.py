import pytest
from pydantic import ValidationError

from upscaler.core.config import Settings


def test_queue_backend_is_normalized():
    assert Settings(QUEUE_BACKEND="Memory").QUEUE_BACKEND == "memory"


def test_unknown_queue_backend_rejected():
    with pytest.raises(ValidationError):
        Settings(QUEUE_BACKEND="kafka")


def test_csv_settings_are_split_and_trimmed():
    config = Settings(
        CORS_ORIGINS="http://a.test, http://b.test,",
        ALLOWED_CONTENT_TYPES="image/png , image/webp",
        LOG_LEVEL="debug",
    )

    assert config.cors_origins == ["http://a.test", "http://b.test"]
    assert config.allowed_content_types == {"image/png", "image/webp"}
    assert config.LOG_LEVEL == "DEBUG"
