"""
LabRange - per-session VM orchestration for hands-on security labs.
"""

__version__ = "1.0.0"
