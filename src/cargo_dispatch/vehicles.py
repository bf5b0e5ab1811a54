from enum import Enum


class VehicleType(str, Enum):
    """Vehicle classes a booking can request and a driver can operate."""

    TWO_WHEELER = "2-wheeler"
    THREE_WHEELER = "3-wheeler"
    MINI_TRUCK = "mini-truck"
    TEMPO = "tempo"
    LARGE_TRUCK = "large-truck"
