from medialink.models.media import MediaDescriptor, MediaJob

__all__ = ["MediaDescriptor", "MediaJob"]
