import time

from session_sync_storage.id_utils import new_id, new_public_slug, now_ms


class TestNewId:
    def test_hex(self):
        value = new_id()
        assert len(value) == 32
        int(value, 16)

    def test_unique(self):
        assert len({new_id() for _ in range(100)}) == 100


class TestNewPublicSlug:
    def test_url_safe(self):
        slug = new_public_slug()
        assert slug
        assert all(c.isalnum() or c in "-_" for c in slug)

    def test_unique(self):
        assert len({new_public_slug() for _ in range(100)}) == 100


class TestNowMs:
    def test_epoch_milliseconds(self):
        before = int(time.time() * 1000)
        value = now_ms()
        after = int(time.time() * 1000)
        assert before <= value <= after
