import contextvars

_request_id: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="-")
_cycle_id: contextvars.ContextVar[str] = contextvars.ContextVar("cycle_id", default="-")


def set_request_id(request_id: str) -> None:
    _request_id.set(request_id)


def get_request_id() -> str:
    return _request_id.get()


def set_cycle_id(cycle_id: str) -> contextvars.Token:
    return _cycle_id.set(cycle_id)


def reset_cycle_id(token: contextvars.Token) -> None:
    _cycle_id.reset(token)


def get_cycle_id() -> str:
    return _cycle_id.get()

