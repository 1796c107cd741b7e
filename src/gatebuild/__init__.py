"""gatebuild - configuration-gated incremental build orchestrator."""

__version__ = "0.1.0"
