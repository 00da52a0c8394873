"""Tests for the per-VM generation lock."""

from unittest.mock import AsyncMock, patch

from vmplane.services import vm_lock


class TestAcquire:
    async def test_acquire_uses_set_nx_with_ttl(self):
        redis = AsyncMock()
        redis.set.return_value = True

        assert await vm_lock.acquire("vm-1", "stop-vm-1:aa", redis=redis) is True

        redis.set.assert_awaited_once_with(
            "vmplane:lock:vm:vm-1", "stop-vm-1:aa", nx=True, ex=900
        )

    async def test_acquire_held_lock_fails(self):
        redis = AsyncMock()
        redis.set.return_value = None

        assert await vm_lock.acquire("vm-1", "start-vm-1:bb", redis=redis) is False

    @patch("vmplane.services.vm_lock.get_redis_client")
    async def test_defaults_to_shared_client(self, mock_get_redis):
        redis = AsyncMock()
        redis.set.return_value = True
        mock_get_redis.return_value = redis

        assert await vm_lock.acquire("vm-1", "t") is True
        redis.set.assert_awaited_once()


class TestRelease:
    async def test_release_is_compare_and_delete(self):
        redis = AsyncMock()
        redis.eval.return_value = 1

        assert await vm_lock.release("vm-1", "stop-vm-1:aa", redis=redis) is True

        script, numkeys, key, token = redis.eval.call_args[0]
        assert "GET" in script and "DEL" in script
        assert (numkeys, key, token) == (1, "vmplane:lock:vm:vm-1", "stop-vm-1:aa")

    async def test_release_by_stale_token_is_refused(self):
        redis = AsyncMock()
        redis.eval.return_value = 0

        assert await vm_lock.release("vm-1", "expired-token", redis=redis) is False


class TestInspect:
    async def test_is_locked(self):
        redis = AsyncMock()
        redis.exists.return_value = 1

        assert await vm_lock.is_locked("vm-1", redis=redis) is True
        redis.exists.assert_awaited_once_with("vmplane:lock:vm:vm-1")

    async def test_extend_refreshes_ttl_for_owner(self):
        redis = AsyncMock()
        redis.eval.return_value = 1

        assert await vm_lock.extend("vm-1", "stop-vm-1:aa", redis=redis) is True
        assert redis.eval.call_args[0][2:] == ("vmplane:lock:vm:vm-1", "stop-vm-1:aa", 900)
