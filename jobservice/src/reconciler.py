from __future__ import annotations

import logging
from hashlib import sha256

from jobservice.src.config import DEFAULT_REGISTRY, ConfigStore
from jobservice.src.engine import ReconcileRequest

CONFIG_TEMPLATE_PATH_KEY = "template-path"
DEFAULT_CONFIG_TEMPLATE_PATH = "/etc/harbor-operator/templates/jobservice-config.yaml.tmpl"
CONFIG_TEMPLATE_KEY = "template-content"
CONFIG_IMAGE_KEY = "docker-image"
DEFAULT_IMAGE = DEFAULT_REGISTRY + "goharbor/harbor-jobservice:v2.0.0"


class JobServiceReconciler:
    """Entry point the engine calls for every queued JobService.

    Rendering the template and applying owned objects is delegated to the
    shared reconciliation engine; this side only resolves the inputs a pass
    needs from the live configuration.
    """

    def __init__(self, store: ConfigStore, logger: logging.Logger | None = None) -> None:
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def image(self) -> str:
        return self.store.get_string(CONFIG_IMAGE_KEY, DEFAULT_IMAGE)

    def template_digest(self) -> str | None:
        content = self.store.get_string(CONFIG_TEMPLATE_KEY, "")
        if not content:
            return None
        return sha256(content.encode("utf-8", "surrogateescape")).hexdigest()[:12]

    def __call__(self, request: ReconcileRequest) -> None:
        self.logger.info(
            "Reconciling JobService %s (image=%s, template=%s)",
            request,
            self.image(),
            self.template_digest() or "<not loaded>",
        )
