"""Helper libraries shared by the client, initiator and orchestrator."""
