"""Agent identity resolution.

Channel payloads refer to agents inconsistently: sometimes by the client-side
id, sometimes by the orchestrator's external id, and sometimes only by role.
Resolution is an ordered list of strategies; the first strategy that finds a
match wins, and within a strategy the first agent in insertion order wins.
"""

from collections.abc import Callable, Sequence

from graph.models import Agent

AgentMatcher = Callable[[Agent, str], bool]


def _by_internal_id(agent: Agent, ref: str) -> bool:
    return agent.id == ref


def _by_external_id(agent: Agent, ref: str) -> bool:
    return agent.agent_id == ref


def _by_role(agent: Agent, ref: str) -> bool:
    return agent.role == ref


def _by_role_containment(agent: Agent, ref: str) -> bool:
    role = agent.role.lower()
    needle = ref.lower()
    return bool(role) and bool(needle) and (needle in role or role in needle)


AGENT_RESOLVERS: tuple[tuple[str, AgentMatcher], ...] = (
    ("internal_id", _by_internal_id),
    ("external_id", _by_external_id),
    ("role", _by_role),
    ("role_contains", _by_role_containment),
)


def resolve_agent(
    agents: Sequence[Agent],
    agent_ref: str | None = None,
    role: str | None = None,
    resolvers: Sequence[tuple[str, AgentMatcher]] = AGENT_RESOLVERS,
) -> Agent | None:
    """Find the agent a delta refers to.

    Args:
        agents: Agents of the loaded execution, in insertion order.
        agent_ref: Identifier from the payload (internal id, external id,
            or occasionally a role string).
        role: Role from the payload, tried after ``agent_ref``.
        resolvers: Ordered (name, matcher) strategies.

    Returns:
        The first matching agent, or None when nothing resolves.
    """
    refs = [ref for ref in (agent_ref, role) if ref]
    for ref in refs:
        for _name, matches in resolvers:
            for agent in agents:
                if matches(agent, ref):
                    return agent
    return None
