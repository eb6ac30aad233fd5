import logging
from typing import Any

from pydantic import BaseModel

logger = logging.getLogger(__name__)


class CustomBaseModel(BaseModel):
    """Custom base model for all response schemas.
    - pre-process the data before init
    - set the default value if the value is invalid (e.g. None for a str field)
    """

    def __init__(self, **data: Any) -> None:
        for attr, value in data.items():
            field = type(self).model_fields.get(attr)
            if field is None:
                continue
            attr_type = field.annotation

            # process simple type
            if attr_type in (int, float, str, bool):
                try:  # try to convert the value to the type of the attribute
                    if value is None:
                        raise ValueError("None")
                    data[attr] = attr_type(value)
                except (TypeError, ValueError):
                    logger.debug("Invalid value for key: %s, using default", attr)
                    default = field.default
                    data[attr] = default if default is not None and not field.is_required() else attr_type()
        super().__init__(**data)

    @classmethod
    def from_record(cls, record: dict[str, Any]):
        if isinstance(record, dict):
            return cls(**record)
        raise ValueError(f"Invalid record type: {type(record)}")
