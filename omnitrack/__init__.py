"""OmniTrack multi-agent orchestration and negotiation engine."""

__version__ = "0.1.0"
