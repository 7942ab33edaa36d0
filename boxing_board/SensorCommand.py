from enum import Enum


class SensorCommand(Enum):
    """
    Control tokens understood by the sensor firmware.
    Update if the firmware learns new commands.
    """
    RESET = "RESET"
    CALIBRATE = "CALIBRATE"

    def to_wire(self, *, case: str = "upper", terminator: str = "\n") -> bytes:
        """
        Returns the UTF-8 line for this command. Some firmware builds only
        accept the lowercase spelling, hence `case`.
        """
        match case:
            case "upper":
                text = self.value.upper()
            case "lower":
                text = self.value.lower()
            case _:
                raise ValueError(f"Unknown command case '{case}'. Expected 'upper' or 'lower'.")
        return (text + terminator).encode("utf-8")
