"""
chaos-monkey: inject network, process and resource faults into running
containers on Docker or containerd, and take them back out again.
"""

__version__ = "0.3.0"
