"""
Kuri Automation Agent

Unattended service for Kuri rotating-savings markets that provides:
- Raffle triggering once every active participant has paid the interval
- VRF subscription top-ups with a persisted funded-set
- Transaction confirmation tracking with bounded re-submission
- Monitoring, JSON reports and a read-only dashboard
"""

__version__ = "0.1.0"
