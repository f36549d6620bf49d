"""Real-time, room-scoped chat message broker."""
