import enum
import logging

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from storefront.errors import PermissionDeniedError
from storefront.models.audit import Actor, ActorKind
from storefront.models.domain import normalize_email
from storefront.observability import log_event
from storefront.storage.blob_store import BlobStore

SHOP_CONFIG_KEY = "config/shop-settings.json"


class AdminPermission(str, enum.Enum):
    MANAGE_ORDERS = "canManageOrders"
    MANAGE_PICKUP = "canManagePickup"


class ShopConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("payment_enabled", "paymentEnabled"),
    )
    payment_disabled_message: str | None = Field(
        default=None,
        validation_alias=AliasChoices("payment_disabled_message", "paymentDisabledMessage"),
    )
    admin_emails: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("admin_emails", "adminEmails"),
    )
    # Missing entry means the admin holds every permission.
    admin_permissions: dict[str, list[str]] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("admin_permissions", "adminPermissions"),
    )

    @field_validator("admin_emails")
    @classmethod
    def normalize_admin_emails(cls, value: list[str]) -> list[str]:
        return [normalize_email(email) for email in value if normalize_email(email)]

    @field_validator("admin_permissions")
    @classmethod
    def normalize_permission_keys(cls, value: dict[str, list[str]]) -> dict[str, list[str]]:
        return {normalize_email(email): perms for email, perms in value.items()}


class PermissionResolver:
    """Answers admin and payment-gate questions from a config snapshot.

    The snapshot only changes on :meth:`reload`, so every check inside one
    operation sees the same configuration.
    """

    def __init__(
        self,
        blobs: BlobStore,
        *,
        super_admin_email: str,
        static_admin_emails: list[str] | None = None,
    ) -> None:
        self.blobs = blobs
        self.super_admin_email = normalize_email(super_admin_email)
        self.static_admin_emails = {normalize_email(email) for email in static_admin_emails or []}
        self._config = ShopConfig()

    @property
    def config(self) -> ShopConfig:
        return self._config

    async def reload(self) -> ShopConfig:
        blob = await self.blobs.read(SHOP_CONFIG_KEY)
        config = ShopConfig.model_validate(blob.value) if blob is not None else ShopConfig()
        self._config = config
        log_event(
            "shop_config_reloaded",
            payment_enabled=config.payment_enabled,
            dynamic_admins=len(config.admin_emails),
        )
        return config

    async def save(self, config: ShopConfig) -> ShopConfig:
        await self.blobs.write(SHOP_CONFIG_KEY, config.model_dump(mode="json"))
        return await self.reload()

    def is_super_admin(self, email: str | None) -> bool:
        return bool(email) and normalize_email(email) == self.super_admin_email

    def is_admin(self, email: str | None) -> bool:
        normalized = normalize_email(email)
        if not normalized:
            return False
        return (
            normalized == self.super_admin_email
            or normalized in self.static_admin_emails
            or normalized in self._config.admin_emails
        )

    def has_permission(self, email: str | None, permission: AdminPermission) -> bool:
        if self.is_super_admin(email):
            return True
        if not self.is_admin(email):
            return False
        granted = self._config.admin_permissions.get(normalize_email(email))
        if granted is None:
            return True
        return permission.value in granted

    def require(self, actor: Actor, permission: AdminPermission) -> None:
        if actor.kind == ActorKind.SYSTEM:
            return
        if actor.kind != ActorKind.ADMIN or not self.has_permission(actor.id, permission):
            log_event(
                "permission_denied",
                level=logging.WARNING,
                actor=actor.label,
                permission=permission.value,
            )
            raise PermissionDeniedError(actor.label, permission.value)

    def payment_gate(self, actor: Actor) -> tuple[bool, str | None]:
        """Whether ``actor`` may submit payment while the shop is closed."""
        if self._config.payment_enabled:
            return True, None
        if actor.kind == ActorKind.ADMIN and self.is_admin(actor.id):
            return True, None
        if actor.kind in (ActorKind.SYSTEM, ActorKind.GATEWAY):
            # Money already moved at the gateway.
            return True, None
        return False, self._config.payment_disabled_message
