"""Router that answers with and without a trailing slash."""

from typing import Any, Callable

from fastapi import APIRouter
from fastapi.types import DecoratedCallable


class TrailingSlashRouter(APIRouter):
    """Registers every endpoint for both the bare path and the path with a trailing slash.

    Only the bare path is exported in the OpenAPI schema. Stripe posts webhooks
    to exactly the configured URL, so neither form may answer with a redirect.

    Examples:
        @router.get("/{user_id}/subscription") - documented as /{user_id}/subscription,
            responds to /{user_id}/subscription and /{user_id}/subscription/

        @router.post("/webhook/", include_in_schema=False) - undocumented, responds to
            /webhook and /webhook/
    """

    def api_route(
        self, path: str, *, include_in_schema: bool = True, **kwargs: Any
    ) -> Callable[[DecoratedCallable], DecoratedCallable]:
        """Register the endpoint under both path variants.

        Args:
            path (str): The path for the endpoint
            include_in_schema (bool): Whether to include the bare path in the OpenAPI schema
            **kwargs: Additional arguments to pass to the parent api_route method

        Returns:
            Callable[[DecoratedCallable], DecoratedCallable]: The registering decorator.
        """
        path = path.rstrip("/")

        register_bare = super().api_route(path, include_in_schema=include_in_schema, **kwargs)
        register_slashed = super().api_route(path + "/", include_in_schema=False, **kwargs)

        def decorator(func: DecoratedCallable) -> DecoratedCallable:
            register_slashed(func)
            return register_bare(func)

        return decorator
