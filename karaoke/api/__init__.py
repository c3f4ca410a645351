"""HTTP API for Commit Karaoke."""
