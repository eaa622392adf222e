"""
Lab catalog - read-only source of lab templates
"""

from typing import Any, Dict, Iterable, Optional, Protocol, Union

import structlog

from labrange.domain.labs.entities import LabTemplate

logger = structlog.get_logger(__name__)


class LabCatalog(Protocol):
    async def get_lab(self, lab_id: str) -> Optional[LabTemplate]: ...


class InMemoryLabCatalog:
    """Catalog loaded from lab records (e.g. a YAML/JSON export of the lab table)."""

    def __init__(self, labs: Iterable[Union[LabTemplate, Dict[str, Any]]] = ()):
        self._labs: Dict[str, LabTemplate] = {}
        for lab in labs:
            self.add(lab)

    def add(self, lab: Union[LabTemplate, Dict[str, Any]]) -> LabTemplate:
        if not isinstance(lab, LabTemplate):
            lab = LabTemplate.model_validate(lab)
        self._labs[lab.id] = lab
        logger.debug("Lab registered", lab_id=lab.id, name=lab.name)
        return lab

    async def get_lab(self, lab_id: str) -> Optional[LabTemplate]:
        return self._labs.get(lab_id)
