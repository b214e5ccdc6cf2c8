import os
from typing import TYPE_CHECKING, cast

from pydantic_settings import BaseSettings

TEST_ENV = "test"


def get_settings() -> BaseSettings:
    """Load settings from the environment and ``.env``. ``APP_ENV=test`` swaps in fixed test values."""
    if os.getenv("APP_ENV") == TEST_ENV:
        from .test_settings import TestSettings

        return TestSettings()

    from .settings import Settings

    return Settings()


if TYPE_CHECKING:
    from .settings import Settings

    settings = cast(Settings, get_settings())
else:
    settings = get_settings()
