"""flowdelta - change-impact analysis for documented workflows."""

__version__ = "0.1.0"
