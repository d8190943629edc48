# errors.py


class RapidRedError(Exception):
    status_code = 400

    def __init__(self, message=None):
        super().__init__(message or self.__class__.__doc__ or self.__class__.__name__)

    @property
    def message(self):
        return self.args[0]


class InvalidRequestError(RapidRedError):
    """Malformed or missing required input."""
    status_code = 400


class NotMatchedError(RapidRedError):
    """Donor was never offered this request."""
    status_code = 403

    def __init__(self, request_id, donor_id):
        self.request_id = request_id
        self.donor_id = donor_id
        super().__init__(f"Donor {donor_id} was not matched to request {request_id}")


class RequestNotFoundError(RapidRedError):
    status_code = 404

    def __init__(self, kind, key):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")


class AlreadyRespondedError(RapidRedError):
    status_code = 409

    def __init__(self, donor_id, prior_status):
        self.donor_id = donor_id
        self.prior_status = prior_status
        super().__init__(f"Donor {donor_id} already responded ({prior_status})")


class InvalidTransitionError(RapidRedError):
    status_code = 409

    def __init__(self, current, target, message=None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move from {current} to {target}")


class RequestExpiredError(InvalidTransitionError):

    def __init__(self, request_id):
        self.request_id = request_id
        super().__init__("cancelled", None, f"Request {request_id} has expired")


class ConflictError(RapidRedError):
    """Request was modified concurrently; reload and retry."""
    status_code = 409
