import sys
from pathlib import Path

import pytest


_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from starkagent.settings import Settings  # noqa: E402


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="test-key",
        rpc_url="http://localhost:5050/rpc",
        starknet_account_address=None,
        starknet_private_key=None,
        redis_url=None,
        bot_token=None,
        max_rounds=3,
        history_window=100,
        news_feed_urls="https://feed-a.test/rss,https://feed-b.test/atom",
        news_limit=5,
    )


@pytest.fixture
def fixed_settings(settings: Settings) -> Settings:
    """Settings with the process-level fixed account configured."""
    return settings.model_copy(
        update={
            "starknet_account_address": "0x1234",
            "starknet_private_key": "0xabcd",
        }
    )
