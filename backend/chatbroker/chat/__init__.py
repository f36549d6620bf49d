"""Chat module (presence, rooms, messages, reactions, read receipts).

Components:
    - PresenceRegistry: connection id -> live user record.
    - RoomDirectory / Room: per-room state behind a per-room lock.
    - RoomLifecycleManager: periodic expiry of idle dynamic rooms.
    - EventDispatcher: push-only fan-out to connections.
    - ChatBroker: one handler per client event.
"""
