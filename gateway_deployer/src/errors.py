from __future__ import annotations


class ReconcileError(Exception):
    """Base class for failures that fail a reconciliation pass and trigger a retry."""

    stage = "reconcile"


class AnnotationWriteError(ReconcileError):
    stage = "annotation"


class RenderError(ReconcileError):
    stage = "render"


class MissingTemplateError(RenderError):
    pass


class TemplateExecutionError(RenderError):
    pass


class InvalidProxyImageError(RenderError):
    pass


class ApplyError(ReconcileError):
    stage = "apply"


class ManifestDecodeError(ApplyError):
    pass


class UnknownResourceError(ApplyError):
    pass
