"""Host bulk edits and quick actions."""
