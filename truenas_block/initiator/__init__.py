"""Local initiator session and device handling."""
