"""Remote policy registration.

Policies are a defense-in-depth layer held by the custody service. The local
execution guard stays authoritative, so registration is best-effort.
"""

from .registrar import (
    HttpPolicyRegistrar,
    NullPolicyRegistrar,
    PolicyRegistrar,
    PolicyRegistration,
    PolicyRule,
    build_policy_rules,
    register_strategy_policies,
)

__all__ = [
    "HttpPolicyRegistrar",
    "NullPolicyRegistrar",
    "PolicyRegistrar",
    "PolicyRegistration",
    "PolicyRule",
    "build_policy_rules",
    "register_strategy_policies",
]
