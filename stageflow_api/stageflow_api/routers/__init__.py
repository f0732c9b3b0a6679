"""HTTP routers for the StageFlow API."""
