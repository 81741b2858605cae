"""Chapter chat rooms: message store, room registry and protocol handler."""
