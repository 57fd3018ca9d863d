"""
Scheduler module for the automation service's periodic tasks.
"""
