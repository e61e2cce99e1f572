"""
Shared request schemas
"""

from typing import Optional

from pydantic import BaseModel, Field

from ..common.config import AddressMapping, DeviceKey, Protocol, ProtocolConfig
from ..services.engine import make_key


class AddressMappingModel(BaseModel):
    """D-register to Modbus offset transform."""
    d_address_base: int = 0
    modbus_offset: int = 0


class DeviceTarget(BaseModel):
    """Which controller to talk to, and how."""
    host: Optional[str] = None
    port: Optional[int] = None
    protocol: Protocol = Protocol.MC
    slave_id: int = 1
    address_mapping: AddressMappingModel = Field(default_factory=AddressMappingModel)
    timeout_s: Optional[float] = None

    def protocol_config(self) -> ProtocolConfig:
        return ProtocolConfig(
            protocol=self.protocol,
            slave_id=self.slave_id,
            address_mapping=AddressMapping(
                d_address_base=self.address_mapping.d_address_base,
                modbus_offset=self.address_mapping.modbus_offset,
            ),
            timeout_s=self.timeout_s,
        )

    def key(self) -> DeviceKey:
        return make_key(self.host, self.port, self.protocol_config())
