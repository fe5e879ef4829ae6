from contextvars import ContextVar

_request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)
_task_id_ctx: ContextVar[str | None] = ContextVar("task_id", default=None)


def set_request_id(request_id: str | None) -> object:
    return _request_id_ctx.set(request_id)


def get_request_id() -> str | None:
    return _request_id_ctx.get()


def reset_request_id(token: object) -> None:
    _request_id_ctx.reset(token)


def set_task_id(task_id: str | None) -> object:
    return _task_id_ctx.set(task_id)


def get_task_id() -> str | None:
    return _task_id_ctx.get()


def reset_task_id(token: object) -> None:
    _task_id_ctx.reset(token)
