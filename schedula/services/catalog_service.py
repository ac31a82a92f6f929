# schedula/services/catalog_service.py
"""
Catalog Service with Multi-Tenant Support

MULTI-TENANT: All service operations are tenant-scoped. A service's default
provider must be a PROVIDER or ADMIN of the same tenant.
"""
from __future__ import annotations

from ..extensions import db
from ..models import Service
from ..models.auth import ROLE_ADMIN, ROLE_PROVIDER
from .tenant_service import require_user_in_tenant

SERVICE_MUTABLE_FIELDS = {
    "name", "description", "duration_minutes", "price_cents", "provider_id", "image_url", "is_active",
}


def apply_service_patch(service: Service, patch: dict) -> None:
    for k, v in patch.items():
        if k not in SERVICE_MUTABLE_FIELDS:
            continue
        setattr(service, k, v)


def _check_provider(patch: dict, tenant_id: int) -> None:
    if patch.get("provider_id") is not None:
        require_user_in_tenant(patch["provider_id"], tenant_id, roles=(ROLE_PROVIDER, ROLE_ADMIN), active_only=True)


def list_services(tenant_id: int, *, include_inactive: bool = False, provider_id: int | None = None) -> dict:
    q = db.session.query(Service).filter(Service.tenant_id == tenant_id)
    if not include_inactive:
        q = q.filter(Service.is_active.is_(True))
    if provider_id is not None:
        q = q.filter(Service.provider_id == provider_id)
    items = [s.to_dict() for s in q.order_by(Service.name.asc(), Service.id.asc()).all()]
    return {"items": items, "count": len(items)}


def get_service(service_id: int, tenant_id: int) -> Service | None:
    return db.session.query(Service).filter_by(id=service_id, tenant_id=tenant_id).first()


def create_service(patch: dict, tenant_id: int) -> dict:
    """
    Raises:
        TenantAccessError: provider_id not a provider of this tenant
    """
    _check_provider(patch, tenant_id)
    service = Service(tenant_id=tenant_id)
    apply_service_patch(service, patch)
    if service.is_active is None:
        service.is_active = True
    db.session.add(service)
    db.session.commit()
    return service.to_dict()


def update_service(service_id: int, patch: dict, tenant_id: int) -> dict | None:
    service = get_service(service_id, tenant_id)
    if service is None:
        return None
    _check_provider(patch, tenant_id)
    apply_service_patch(service, patch)
    db.session.commit()
    return service.to_dict()


def deactivate_service(service_id: int, tenant_id: int) -> bool:
    """Soft delete; appointments keep pointing at the service."""
    service = get_service(service_id, tenant_id)
    if service is None:
        return False
    service.is_active = False
    db.session.commit()
    return True
