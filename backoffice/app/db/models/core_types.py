import enum

class Role(str, enum.Enum):
    super_admin = "SuperAdmin"
    store_manager = "StoreManager"
    customer = "Customer"

class LocationType(str, enum.Enum):
    warehouse = "warehouse"
    store = "store"
    online = "online"

class MovementType(str, enum.Enum):
    receipt = "RECEIPT"
    issue = "ISSUE"
    adjustment = "ADJUSTMENT"
    reserve = "RESERVE"
    unreserve = "UNRESERVE"
    assembly_consume = "ASSEMBLY_CONSUME"
    assembly_output = "ASSEMBLY_OUTPUT"

class OrderKind(str, enum.Enum):
    sale = "SALE"
    purchase = "PURCHASE"
    online = "ONLINE"

class OrderStatus(str, enum.Enum):
    pending = "Pending"
    confirmed = "Confirmed"
    approved = "Approved"
    accepted = "Accepted"
    shipped = "Shipped"
    delivered = "Delivered"
    received = "Received"
    cancelled = "Cancelled"

class OrderAction(str, enum.Enum):
    confirm = "confirm"
    approve = "approve"
    accept = "accept"
    ship = "ship"
    deliver = "deliver"
    receive = "receive"
    cancel = "cancel"

class PaymentStatus(str, enum.Enum):
    pending = "Pending"
    paid = "Paid"
    partially_paid = "PartiallyPaid"

class OrderChannel(str, enum.Enum):
    """Préfixe de numérotation, une séquence par canal et par jour."""
    purchase = "PO"
    sale = "SO"
    guest = "GUEST"
    online = "ON"
    customer = "CUST"
    assembly = "ASM"

class DiscountType(str, enum.Enum):
    percentage = "Percentage"
    fixed_amount = "FixedAmount"

class AssemblyStatus(str, enum.Enum):
    pending = "Pending"
    in_progress = "InProgress"
    completed = "Completed"
    cancelled = "Cancelled"
