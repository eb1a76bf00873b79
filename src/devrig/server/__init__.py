from devrig.server.app import create_front_door_app
from devrig.server.event_bus import HmrEventBus
from devrig.server.front_door import DevFrontDoor, PendingRequestQueue

__all__ = [
	"DevFrontDoor",
	"HmrEventBus",
	"PendingRequestQueue",
	"create_front_door_app",
]
