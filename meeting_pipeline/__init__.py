"""
Meeting pipeline: recorded meetings to transcripts, action items and Jira issues.
"""

__version__ = "1.0.0"
