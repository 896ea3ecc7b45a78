"""Guest notifications."""
