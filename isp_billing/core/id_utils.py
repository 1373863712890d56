import uuid
from datetime import date

import shortuuid


def new_id() -> str:
    return str(uuid.uuid4())


def generate_short_token(length: int = 8) -> str:
    return shortuuid.ShortUUID(alphabet="23456789ABCDEFGHJKLMNPQRSTUVWXYZ").random(length=length)


def generate_invoice_no(billing_date: date) -> str:
    return f"INV-{billing_date:%y%m%d}-{generate_short_token()}"
