"""
interfaces/ — user-facing front ends for DigitalSE.
"""
