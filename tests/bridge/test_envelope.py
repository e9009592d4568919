"""Tests for envelopes and the plugin init context."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from livehub.bridge.envelope import Envelope, PluginContext


class TestEnvelope:
    def test_lifecycle_wire(self):
        envelope = Envelope.lifecycle("window-closed", "demo", "p1")
        assert envelope.to_wire() == {
            "type": "window-event",
            "eventType": "lifecycle",
            "event": "window-closed",
            "pluginId": "demo",
            "popupId": "p1",
        }

    def test_data_wire_with_payload(self):
        envelope = Envelope.data("readonly-store-update", "demo", {"rooms": []})
        wire = envelope.to_wire()
        assert wire["eventType"] == "data"
        assert wire["payload"] == {"rooms": []}
        assert "popupId" not in wire

    def test_unknown_kind_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(kind="command", event="x", plugin_id="demo")

    def test_frozen(self):
        envelope = Envelope.data("x", "demo")
        with pytest.raises(ValidationError):
            envelope.event = "y"


class TestPluginContext:
    def test_wire(self):
        context = PluginContext(
            plugin_id="demo",
            capabilities=["window"],
            readonly_store={"rooms": [], "liveRoomsCount": 0},
        )
        assert context.to_wire() == {
            "pluginId": "demo",
            "popupId": None,
            "capabilities": ["window"],
            "readonlyStore": {"rooms": [], "liveRoomsCount": 0},
        }
