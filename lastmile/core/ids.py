import uuid

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def new_lease_id() -> str:
    # leases are opaque; only equality matters
    return uuid.uuid4().hex
