"""
Catalog Import Service — loads frameworks from YAML documents.

Document shape:

    framework:
      identifier: soc2
      name: SOC 2
      category: security_privacy
    version:
      version: "2017"
      display_name: SOC 2 (2017 TSC)
      status: active
    requirements:
      - identifier: CC1
        title: Control Environment
        assessable: false
        children:
          - identifier: CC1.1
            title: ...

A framework already in the catalog gains the new version; an existing
(framework, version) pair is rejected.
"""
from __future__ import annotations

import logging
from datetime import date
from typing import Any, BinaryIO

import yaml
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from grc_api.models.framework import (
    FRAMEWORK_CATEGORIES, VERSION_STATUSES, Framework, FrameworkVersion, Requirement,
)

log = logging.getLogger(__name__)


class CatalogImportError(ValueError):
    pass


async def import_from_yaml(s: AsyncSession, file: BinaryIO | str) -> FrameworkVersion:
    """Import one framework version with its requirement tree. Caller commits."""
    content = file if isinstance(file, str) else file.read()
    if isinstance(content, bytes):
        content = content.decode("utf-8")
    data = yaml.safe_load(content)
    if not data or not isinstance(data, dict):
        raise CatalogImportError("Empty YAML document")

    fw_data = data.get("framework") or {}
    ver_data = data.get("version") or {}
    identifier = fw_data.get("identifier")
    if not identifier or not fw_data.get("name"):
        raise CatalogImportError("framework.identifier and framework.name are required")
    category = fw_data.get("category", "custom")
    if category not in FRAMEWORK_CATEGORIES:
        raise CatalogImportError(f"Unknown framework category '{category}'")
    version_label = str(ver_data.get("version") or "")
    if not version_label:
        raise CatalogImportError("version.version is required")
    status = ver_data.get("status", "active")
    if status not in VERSION_STATUSES:
        raise CatalogImportError(f"Unknown version status '{status}'")

    fw = (await s.execute(
        select(Framework).where(Framework.identifier == identifier)
    )).scalar_one_or_none()
    if fw is None:
        fw = Framework(
            identifier=identifier,
            name=fw_data["name"],
            description=fw_data.get("description"),
            category=category,
            website_url=fw_data.get("website_url"),
            is_custom=bool(fw_data.get("is_custom", False)),
        )
        s.add(fw)
        await s.flush()
    else:
        dup = (await s.execute(
            select(func.count()).select_from(FrameworkVersion).where(
                FrameworkVersion.framework_id == fw.id,
                FrameworkVersion.version == version_label,
            )
        )).scalar()
        if dup:
            raise CatalogImportError(f"Framework '{identifier}' already has version '{version_label}'")

    fv = FrameworkVersion(
        framework_id=fw.id,
        version=version_label,
        display_name=ver_data.get("display_name") or f"{fw.name} {version_label}",
        status=status,
        effective_date=_as_date(ver_data.get("effective_date")),
        sunset_date=_as_date(ver_data.get("sunset_date")),
        changelog=ver_data.get("changelog"),
    )
    s.add(fv)
    await s.flush()

    nodes = _flatten_nodes(data.get("requirements") or [])
    fv.total_requirements = await _insert_nodes(s, fv, nodes)
    log.info("Imported %s %s: %d requirements", identifier, version_label, fv.total_requirements)
    return fv


def _flatten_nodes(
    nodes: list[dict], depth: int = 0, parent: int | None = None, result: list[dict] | None = None
) -> list[dict]:
    """Depth-first flatten; ``parent`` is the index of the parent entry in the result."""
    if result is None:
        result = []
    for order, node in enumerate(nodes, start=1):
        if not node.get("identifier") or not node.get("title"):
            raise CatalogImportError("Every requirement needs an identifier and a title")
        index = len(result)
        children = node.get("children") or []
        result.append({
            "identifier": str(node["identifier"]),
            "title": str(node["title"]),
            "description": node.get("description"),
            "guidance": node.get("guidance"),
            "assessable": bool(node.get("assessable", not children)),
            "depth": depth,
            "section_order": order,
            "parent": parent,
        })
        if children:
            _flatten_nodes(children, depth + 1, index, result)
    return result


async def _insert_nodes(s: AsyncSession, fv: FrameworkVersion, nodes: list[dict]) -> int:
    ids: list[str] = []
    for nd in nodes:
        req = Requirement(
            framework_version_id=fv.id,
            parent_id=ids[nd["parent"]] if nd["parent"] is not None else None,
            identifier=nd["identifier"],
            title=nd["title"],
            description=nd["description"],
            guidance=nd["guidance"],
            section_order=nd["section_order"],
            depth=nd["depth"],
            is_assessable=nd["assessable"],
        )
        s.add(req)
        await s.flush()
        ids.append(req.id)
    return len(ids)


def _as_date(value: Any) -> date | None:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(str(value))
