"""Electronic signature capture and verification."""
