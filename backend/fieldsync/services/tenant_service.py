# Overview: Service-layer operations for tenants; the isolation boundary of the store.

from __future__ import annotations

import logging

from ..errors import UnknownTenant
from ..extensions import db
from ..models import Tenant

logger = logging.getLogger(__name__)


class TenantError(ValueError):
    """Raised when tenant administration fails."""


def get_tenant(tenant_id: str) -> Tenant | None:
    if not tenant_id:
        return None
    return db.session.get(Tenant, tenant_id)


def require_active_tenant(tenant_id: str) -> Tenant:
    """
    Return the tenant or raise UnknownTenant.

    Unknown and inactive tenants are reported the same way so the response
    does not reveal which tenant ids exist.
    """
    tenant = get_tenant(tenant_id)
    if tenant is None or not tenant.is_active:
        logger.warning("Rejected access for unknown or inactive tenant %r", tenant_id)
        raise UnknownTenant()
    return tenant


def create_tenant(tenant_id: str, name: str) -> Tenant:
    tenant_id = (tenant_id or "").strip()
    name = (name or "").strip()
    if not tenant_id:
        raise TenantError("tenant id is required")
    if len(tenant_id) > 64:
        raise TenantError("tenant id must be at most 64 characters")
    if not name:
        raise TenantError("tenant name is required")
    if get_tenant(tenant_id) is not None:
        raise TenantError(f"Tenant {tenant_id} already exists")

    tenant = Tenant(id=tenant_id, name=name, is_active=True)
    db.session.add(tenant)
    db.session.flush()
    return tenant


def set_tenant_active(tenant_id: str, is_active: bool) -> Tenant:
    tenant = get_tenant(tenant_id)
    if tenant is None:
        raise TenantError(f"Tenant {tenant_id} not found")
    tenant.is_active = bool(is_active)
    db.session.flush()
    return tenant


def list_tenants(include_inactive: bool = False) -> list[Tenant]:
    query = db.session.query(Tenant)
    if not include_inactive:
        query = query.filter(Tenant.is_active.is_(True))
    return query.order_by(Tenant.id.asc()).all()
