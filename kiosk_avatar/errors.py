"""Exception types raised across the capture and render pipeline."""


class KioskAvatarError(Exception):
    pass


class CaptureError(KioskAvatarError):
    """A frame could not be obtained from the camera service."""


class CameraBusyError(CaptureError):
    """Transient: the device is busy or the read timed out."""


class CameraUnavailableError(CaptureError):
    """Permanent: the device is gone or can never be opened."""


class FrameConversionError(KioskAvatarError):
    pass


class UnsupportedPixelFormatError(FrameConversionError):
    def __init__(self, pixel_format):
        super().__init__(f"unsupported pixel format: {pixel_format!r}")
        self.pixel_format = pixel_format


class FrameGeometryError(FrameConversionError):
    pass


class InferenceError(KioskAvatarError):
    pass


class BridgeTimeoutError(KioskAvatarError):
    """A host call did not return within its deadline."""


class BridgeClosedError(KioskAvatarError):
    pass


class ResourceAcquisitionError(KioskAvatarError):
    """Raised to the hosting screen when the pipeline cannot become active."""

    def __init__(self, stage, cause):
        super().__init__(f"failed to acquire {stage}: {cause}")
        self.stage = stage
        self.cause = cause
