"""
SoilProbe Services

- device: Modbus RTU framing, transactions, serial connection
- polling: Active/Suspended scheduler driving the device service
"""
