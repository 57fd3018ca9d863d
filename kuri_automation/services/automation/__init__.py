"""
Raffle and VRF subscription automation engine.
"""
