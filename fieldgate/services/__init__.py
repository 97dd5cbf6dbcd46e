"""
FieldGate Services

- Register Service - Register map model, presets, import/export
- Equipment Service - Equipment records and the store callback
- Device Service - Modbus I/O, coil control, calibration, health endpoints
- Discovery Service - Slave id scans, network sweeps, provisioning
"""
