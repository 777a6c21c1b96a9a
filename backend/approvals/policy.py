"""Which tool providers are configured, auto-approved, or part of the workflow."""

from collections.abc import Iterable


class ToolServerPolicy:
    """Answers per-provider questions for the approval engine.

    Args:
        configured: Providers the client knows how to invoke.
        auto_approved: Providers whose calls are approved without asking.
        workflow: Names that denote the remote workflow itself; calls routed
            to them need no local invocation.
    """

    def __init__(
        self,
        configured: Iterable[str] = (),
        auto_approved: Iterable[str] = (),
        workflow: Iterable[str] = (),
    ) -> None:
        self.configured = frozenset(configured)
        self.auto_approved = frozenset(auto_approved)
        self.workflow = frozenset(workflow)

    def is_configured(self, server: str | None) -> bool:
        return server is not None and server in self.configured

    def is_auto_approved(self, server: str | None) -> bool:
        return server is not None and server in self.auto_approved

    def requires_invocation(self, server: str | None) -> bool:
        """True if approving a paused call means running the tool here first."""
        return bool(server) and server not in self.workflow
