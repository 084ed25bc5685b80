"""Concrete delivery fleet dispatch: order assignment, truck workflows and plant inventory."""
