"""Camera acquisition, stability gating and capture sessions."""
