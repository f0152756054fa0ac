"""
ccost - deduplicated usage and cost accounting for AI-assistant conversation logs.
"""

__version__ = "0.3.0"
