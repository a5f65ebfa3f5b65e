"""Chat interfaces that feed inbound events into the relay."""
