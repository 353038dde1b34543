"""Call sessions, placement, status tracking and the media stream bridge."""
