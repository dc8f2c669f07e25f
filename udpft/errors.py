class TransferError(Exception):
    pass


# Socket creation or bind failed; fatal at startup
class TransportUnavailable(TransferError):
    pass


# No acknowledgment arrived within the retry budget
class PeerUnreachable(TransferError):
    pass


class RemoteFileNotFound(TransferError):
    pass


class FileCreateFailed(TransferError):
    pass


# Checksum over the wire bytes did not match the packet's checksum field
class IntegrityMismatch(TransferError):
    pass


class UnknownOperation(TransferError):
    pass


class DeleteFailed(TransferError):
    pass


# The client could not open the local source or destination file
class LocalFileError(TransferError):
    pass
