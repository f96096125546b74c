"""Models, repositories and database plumbing for the Nightbot snapshot service."""
