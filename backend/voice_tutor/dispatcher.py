import logging
from collections.abc import Callable

from pydantic import BaseModel, ValidationError

from voice_tutor.errors import DispatchError
from voice_tutor.events import FunctionCallCompleted

logger = logging.getLogger(__name__)

# handler(arguments, event); must not block. Long work is scheduled by the handler.
Handler = Callable[[BaseModel, FunctionCallCompleted], None]


class FunctionCallDispatcher:
    """
    Maps function names the agent may call to local handlers.

    The agent's function vocabulary can change independently of this code, so
    unknown names are logged and ignored. Arguments are validated against the
    model registered with each handler; a bad payload becomes a DispatchError
    that is logged and handed to `on_error`, never raised.
    The conversation keeps going either way.
    """

    def __init__(self, on_error: Callable[[DispatchError], None] | None = None):
        self._handlers: dict[str, tuple[Handler, type[BaseModel]]] = {}
        self._on_error = on_error

    def register(self, name: str, handler: Handler, args_model: type[BaseModel]) -> None:
        self._handlers[name] = (handler, args_model)

    def parse_arguments(self, event: FunctionCallCompleted, args_model: type[BaseModel]) -> BaseModel:
        try:
            return args_model.model_validate_json(event.arguments)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in e['loc']) or 'arguments'}: {e['msg']}"
                for e in exc.errors()
            )
            raise DispatchError(
                f"{event.name}: invalid arguments ({problems})",
                name=event.name,
                call_id=event.call_id,
            ) from exc

    def dispatch(self, event: FunctionCallCompleted) -> bool:
        """Run the handler for `event`. Returns True if one ran."""
        entry = self._handlers.get(event.name)
        if entry is None:
            logger.warning("[Dispatch] ignoring unknown function %r", event.name)
            return False

        handler, args_model = entry
        try:
            args = self.parse_arguments(event, args_model)
        except DispatchError as exc:
            logger.warning("[Dispatch] %s", exc)
            if self._on_error:
                self._on_error(exc)
            return False

        logger.info("[Dispatch] %s(%s)", event.name, args.model_dump_json()[:200])
        handler(args, event)
        return True
