from dataclasses import dataclass


@dataclass
class OrderError(Exception):
    code: str
    message: str
    status_code: int = 400

    def __str__(self) -> str:
        return f"{self.code}:{self.message}"


class OrderNotFoundError(OrderError):
    def __init__(self, ref: str) -> None:
        super().__init__(code="ORDER_NOT_FOUND", message=f"Order {ref} not found", status_code=404)
        self.ref = ref


class DuplicateOrderError(OrderError):
    def __init__(self, ref: str) -> None:
        super().__init__(code="DUPLICATE_ORDER", message=f"Order {ref} already exists", status_code=409)
        self.ref = ref


class TransitionNotAllowedError(OrderError):
    def __init__(self, current: str, requested: str, trigger: str) -> None:
        super().__init__(
            code="TRANSITION_NOT_ALLOWED",
            message=(
                f"Transition not allowed from current status: {current} -> {requested} "
                f"({trigger})"
            ),
            status_code=409,
        )
        self.current = current
        self.requested = requested
        self.trigger = trigger


class EvidenceValidationError(OrderError):
    def __init__(self, message: str) -> None:
        super().__init__(code="INVALID_EVIDENCE", message=message, status_code=400)


class CartValidationError(OrderError):
    def __init__(self, message: str) -> None:
        super().__init__(code="INVALID_CART", message=message, status_code=400)


class PermissionDeniedError(OrderError):
    def __init__(self, actor: str, permission: str) -> None:
        super().__init__(
            code="PERMISSION_DENIED",
            message=f"{actor} lacks permission {permission}",
            status_code=403,
        )


class VersionConflictError(OrderError):
    def __init__(self, key: str, expected: int | None, actual: int | None) -> None:
        super().__init__(
            code="VERSION_CONFLICT",
            message=f"{key} changed concurrently (expected v{expected}, found v{actual})",
            status_code=409,
        )
        self.key = key
