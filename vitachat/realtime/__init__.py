from vitachat.realtime.connection import Connection, ConnectionState, room_id_for
from vitachat.realtime.registry import ConnectionRegistry, Room

__all__ = ["Connection", "ConnectionRegistry", "ConnectionState", "Room", "room_id_for"]
