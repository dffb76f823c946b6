from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from models.refund import RefundType
from utils.errors import ValidationError


def parse_payload(model: type[BaseModel], payload):
    """
    Validate loosely-typed input against a schema model.
    Already-built model instances pass through unchanged.
    """
    if isinstance(payload, model):
        return payload

    try:
        return model.model_validate(payload)
    except SchemaError as e:
        errors = [
            {
                "loc": ".".join(str(part) for part in err.get("loc", ())),
                "msg": err.get("msg"),
            }
            for err in e.errors()
        ]
        raise ValidationError(f"Invalid {model.__name__}", {"errors": errors})


def require_nonnegative_unless_others(amount, refund_type):
    if amount is not None and amount < 0 and refund_type != RefundType.OTHERS:
        raise ValidationError(
            "Negative refund_amount is only allowed for refund_type OTHERS",
            {"refund_amount": amount, "refund_type": refund_type},
        )
