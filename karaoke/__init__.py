"""Commit Karaoke: a repository's recent commit history, as a generated song."""
