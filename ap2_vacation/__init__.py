"""
AP2 Vacation Booking - Agent Payments Protocol demo for Tropical Paradise Vacations
"""

__version__ = "1.0.0"
