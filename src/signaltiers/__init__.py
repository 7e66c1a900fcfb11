"""SignalTiers: subscription billing for signal providers."""

__version__ = "0.1.0"
