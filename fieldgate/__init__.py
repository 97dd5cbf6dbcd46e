"""
FieldGate - edge gateway Modbus core

Register maps, coil control, calibration and device discovery for
Modbus TCP field equipment.
"""

__version__ = "1.0.0"
