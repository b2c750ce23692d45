"""
Error recovery: classification, tracking, urgency scoring, summaries and retry.
"""
