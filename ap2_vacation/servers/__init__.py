"""
AP2 Vacation Booking - Agent Servers
"""
