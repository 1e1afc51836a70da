"""Tests for iocare.host."""

from __future__ import annotations

import json

from iocare.host import HostedAccessory, LocalHost, accessory_uuid


class TestAccessoryUuid:
    def test_deterministic(self):
        assert accessory_uuid("BC001") == accessory_uuid("BC001")
        assert accessory_uuid("BC001") != accessory_uuid("BC002")


class TestLocalHost:
    def test_cache_round_trip(self, tmp_path):
        cache = tmp_path / "nested" / "accessories.json"
        host = LocalHost(cache)
        hosted = host.create_accessory("u1", "Bedroom")
        hosted.context["configured"] = True
        host.register_accessories([hosted])
        host.save()

        restored = LocalHost(cache).cached_accessories()
        assert restored == [HostedAccessory("u1", "Bedroom", {"configured": True})]

    def test_unreadable_cache_is_ignored(self, tmp_path):
        cache = tmp_path / "accessories.json"
        cache.write_text("{not json")
        assert LocalHost(cache).cached_accessories() == []

    def test_unregister(self, tmp_path):
        cache = tmp_path / "accessories.json"
        cache.write_text(json.dumps([{"uuid": "u1", "display_name": "Old", "context": {}}]))
        host = LocalHost(cache)

        host.unregister_accessories(host.cached_accessories())
        host.save()

        assert host.accessories == {}
        assert json.loads(cache.read_text()) == []

    def test_attribute_updates_reach_listeners(self):
        host = LocalHost()
        seen = []
        host.subscribe(lambda accessory, attrs: seen.append((accessory.uuid, attrs)))
        hosted = HostedAccessory("u1", "Bedroom")

        host.update_attributes(hosted, {"active": True})

        assert seen == [("u1", {"active": True})]
        assert host.attributes["u1"] == {"active": True}

    async def test_launch_and_close_fire_callbacks(self, tmp_path):
        host = LocalHost(tmp_path / "accessories.json")
        events = []

        async def ready():
            events.append("ready")

        async def shutdown():
            events.append("shutdown")

        host.on_ready(ready)
        host.on_shutdown(shutdown)
        await host.launch()
        await host.close()

        assert events == ["ready", "shutdown"]
        assert (tmp_path / "accessories.json").exists()
