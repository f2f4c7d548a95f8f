"""Errors raised by the report pipeline"""


class ReportError(Exception):
    """Base error for the report pipeline"""

    pass


class InvalidArgument(ReportError, ValueError):
    """A required input (survey, document engine) is missing"""

    pass


class NoExportTargets(ReportError):
    """No image is selected for the report"""

    code = "NO_EXPORT_TARGETS"


class AnnotationFetchError(ReportError):
    """Annotation data for an image could not be retrieved"""

    pass


class ImageLoadError(ReportError):
    """Image bytes could not be fetched or decoded"""

    pass


class FontRegistrationError(ReportError):
    """The embedded font could not be loaded into the document engine"""

    pass


class DocumentAssemblyError(ReportError):
    """The PDF engine failed while assembling the document"""

    code = "ASSEMBLY_FAILED"


class SurveyFormatError(ReportError, ValueError):
    """A survey document is malformed"""

    pass
