"""
tests/test_utils/test_retry.py — Tests for the read-retry decorator.
"""

from __future__ import annotations

import pytest

from civicdata_pipeline.utils.retry import with_retry


class TestWithRetry:
    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        attempts = []

        @with_retry(max_attempts=3, base_delay=0.01)
        async def flaky() -> str:
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("blip")
            return "ok"

        assert await flaky() == "ok"
        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_reraises_after_last_attempt(self):
        calls = []

        @with_retry(max_attempts=2, base_delay=0.01)
        async def down() -> None:
            calls.append(1)
            raise ConnectionError("down")

        with pytest.raises(ConnectionError):
            await down()
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_only_listed_exceptions_retry(self):
        calls = []

        @with_retry(max_attempts=3, base_delay=0.01, retry_on=ConnectionError)
        async def bad_input() -> None:
            calls.append(1)
            raise ValueError("bad")

        with pytest.raises(ValueError):
            await bad_input()
        assert len(calls) == 1
