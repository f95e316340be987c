"""Chat client: local identity, HTTP collaborators, and the message sync loop."""
