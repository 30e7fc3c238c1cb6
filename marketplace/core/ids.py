import uuid

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def gen_listing_id() -> str:
    # Listing ids are bare UUIDs: order references embed their first 8 chars.
    return str(uuid.uuid4())
