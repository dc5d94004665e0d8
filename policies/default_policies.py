"""Declarative catalogue of the scopes the compiler emits.

The compiler reads scope names, descriptions and ``required`` flags from here,
so this file is also the human-readable list of every rule a child wallet
operates under.
"""

from core.permissions import ActionType

TRANSFER_SCOPE = "allowance_transfer"
DENY_DEPLOY_SCOPE = "deny_deploy"
DENY_SMART_CONTRACT_SCOPE = "deny_smart_contract"
BLOCKED_ACTIONS_SCOPE = "blocked_actions"
SIGN_MESSAGES_SCOPE = "sign_messages"

POLICIES = {
    TRANSFER_SCOPE: {
        "description": "Allow sending funds",
        "required": True,
        "rules": [
            "one ALLOW/TRANSFER permission per resolved chain",
            "VALUE LESS_THAN <usd limit> when the parent set a limit (exclusive: $15 rejects $15.00)",
            "TO_ADDRESS INCLUDED_IN <allowlist> when the parent set an allowlist",
        ],
    },
    DENY_DEPLOY_SCOPE: {
        "description": "Block contract deployment for security",
        "required": True,
        "rules": ["DENY/DEPLOY_CONTRACT on every resolved chain, no conditions"],
    },
    DENY_SMART_CONTRACT_SCOPE: {
        "description": "Block smart contract interaction for security",
        "required": True,
        "rules": ["DENY/SMART_CONTRACT on every resolved chain, no conditions"],
    },
    BLOCKED_ACTIONS_SCOPE: {
        "description": "Actions the parent has blocked",
        "required": False,
        "rules": ["DENY/<action> on every resolved chain for each extra blocked action"],
    },
    SIGN_MESSAGES_SCOPE: {
        "description": "Allow signing messages for verification",
        "required": False,
        "rules": ["ALLOW/SIGN_MESSAGE on every resolved chain, no conditions"],
    },
}

# Always denied; the parent cannot switch these off.
SECURITY_DENIED_ACTIONS: tuple[ActionType, ...] = (
    ActionType.DEPLOY_CONTRACT,
    ActionType.SMART_CONTRACT,
)

DEFAULT_BLOCKED_ACTIONS: frozenset[ActionType] = frozenset(SECURITY_DENIED_ACTIONS)

BLOCKED_ACTION_DESCRIPTIONS = {
    ActionType.DEPLOY_CONTRACT: "Deploying new smart contracts",
    ActionType.SMART_CONTRACT: "Interacting with smart contracts",
    ActionType.SIGN_MESSAGE: "Signing arbitrary messages",
    ActionType.TRANSFER: "Sending funds",
}


def blocked_action_description(action: ActionType) -> str:
    return BLOCKED_ACTION_DESCRIPTIONS.get(action, action.value)
