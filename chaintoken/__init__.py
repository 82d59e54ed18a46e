"""
chaintoken: offline-verifiable, attenuable authorization tokens

Version: 0.1.0

A token is a chain of signed blocks holding Datalog facts, rules and
checks. The issuer signs the authority block with a root key; any holder
can append blocks that only restrict what the token grants, without
contacting the issuer. A verifier loads the token with the root public
key, adds its own facts and policies, and gets a decision locally.

Usage:
    from chaintoken import KeyPair, BiscuitBuilder, Biscuit

    root = KeyPair()

    builder = BiscuitBuilder()
    builder.add_fact('user("alice")')
    builder.add_fact('right("file1", "read")')
    token = builder.build(root)

    # attenuate
    block = token.create_block()
    block.add_check('check if operation("read")')
    token = token.append(block)

    # verify and authorize
    token = Biscuit.from_base64(token.to_base64(), root.public_key)
    authorizer = token.authorizer()
    authorizer.add_code('''
        resource("file1");
        operation("read");
        allow if user($u), right($r, $op), resource($r), operation($op);
    ''')
    index = authorizer.authorize()
"""

__version__ = "0.1.0"

# Errors
from .errors import (
    ChainTokenError,
    DataLogError,
    BiscuitBuildError,
    BiscuitValidationError,
    BiscuitSerializationError,
    AuthorizationError,
)

# Keys
from .signing import (
    KeyPair,
    PublicKey,
    PrivateKey,
)

# Datalog
from .terms import (
    Term,
    Variable,
    Integer,
    String,
    Date,
    Bytes,
    Bool,
    Set,
    Predicate,
)
from .expressions import Expression
from .statements import (
    Fact,
    Rule,
    Query,
    Check,
    CheckKind,
    Policy,
    PolicyKind,
)
from .parser import (
    parse_fact,
    parse_rule,
    parse_check,
    parse_policy,
    parse_source,
)

# Builders and tokens
from .builder import BlockBuilder, BiscuitBuilder
from .token import Biscuit, TokenChain

# Authorization
from .world import RunLimits
from .authorizer import (
    Authorizer,
    AuthorizerState,
    AuthorizationResult,
    FailedCheck,
    MatchedPolicy,
)


__all__ = [
    # Version
    "__version__",

    # Errors
    "ChainTokenError",
    "DataLogError",
    "BiscuitBuildError",
    "BiscuitValidationError",
    "BiscuitSerializationError",
    "AuthorizationError",

    # Keys
    "KeyPair",
    "PublicKey",
    "PrivateKey",

    # Datalog
    "Term",
    "Variable",
    "Integer",
    "String",
    "Date",
    "Bytes",
    "Bool",
    "Set",
    "Predicate",
    "Expression",
    "Fact",
    "Rule",
    "Query",
    "Check",
    "CheckKind",
    "Policy",
    "PolicyKind",
    "parse_fact",
    "parse_rule",
    "parse_check",
    "parse_policy",
    "parse_source",

    # Builders and tokens
    "BlockBuilder",
    "BiscuitBuilder",
    "Biscuit",
    "TokenChain",

    # Authorization
    "RunLimits",
    "Authorizer",
    "AuthorizerState",
    "AuthorizationResult",
    "FailedCheck",
    "MatchedPolicy",
]
