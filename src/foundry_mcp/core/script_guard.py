"""
Script safety screening for Foundry MCP.

ScriptGuard checks background script text against a declarative rule table
before it is dispatched, and enforces execution modes.

This is a guardrail, not a security boundary. It complements, and never
replaces, the instance's own ACLs and roles. It cannot see:
- obfuscated payloads (string concatenation, encoded source, eval of data)
- indirect calls through Script Includes or other server-side scripts
- operations performed by a different application scope
A script that passes screening may still be dangerous.
"""

import re
from dataclasses import dataclass, field
from enum import Enum

from .errors import ErrorKind, ServiceNowError


class ExecutionMode(str, Enum):
    """How much mutation a submitted script may perform."""

    READONLY = "readonly"
    DRYRUN = "dryrun"
    EXECUTE = "execute"


class RuleAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"


@dataclass(frozen=True)
class SafetyRule:
    """One entry of the rule table."""

    category: str
    patterns: tuple[str, ...]
    action: RuleAction
    reason: str


# Evaluated in order; the first matching BLOCK rule is reported as the
# matched category.
DEFAULT_RULES: tuple[SafetyRule, ...] = (
    SafetyRule(
        category="record_deletion",
        patterns=(
            r"\.deleteMultiple\s*\(",
            r"GlideMultipleDelete",
            r"sys_db_object[\s\S]*\.delete",
        ),
        action=RuleAction.BLOCK,
        reason="Mass delete operations are blocked",
    ),
    SafetyRule(
        category="bulk_operation",
        patterns=(
            r"\.updateMultiple\s*\(",
            r"GlideMultipleUpdate",
        ),
        action=RuleAction.BLOCK,
        reason="Mass update operations are blocked",
    ),
    SafetyRule(
        category="table_structure",
        patterns=(
            r"GlideTableCreator",
            r"TableDrop|dropTable",
        ),
        action=RuleAction.BLOCK,
        reason="Table creation or deletion is blocked",
    ),
    SafetyRule(
        category="system_property_write",
        patterns=(
            r"gs\.setProperty",
            r"GlideProperties\.set",
        ),
        action=RuleAction.BLOCK,
        reason="System property changes are blocked",
    ),
    SafetyRule(
        category="credential_access",
        patterns=(
            r"discovery_credentials",
            r"oauth_credential",
            r"sys_certificate",
            r"\.password\s*=",
            r"password_reset",
        ),
        action=RuleAction.BLOCK,
        reason="Credential and password access is blocked",
    ),
    SafetyRule(
        category="role_manipulation",
        patterns=(
            r"sys_user_has_role[\s\S]*\.(insert|update|deleteRecord)\s*\(",
            r"sys_user_grmember[\s\S]*\.(insert|update|deleteRecord)\s*\(",
            r"sys_user_role[\s\S]*\.(insert|update|deleteRecord)\s*\(",
        ),
        action=RuleAction.BLOCK,
        reason="Role and group membership changes are blocked",
    ),
    SafetyRule(
        category="outbound_network",
        patterns=(
            r"RESTMessageV2",
            r"SOAPMessageV2",
            r"GlideHTTPRequest",
            r"httpRequest",
        ),
        action=RuleAction.BLOCK,
        reason="External HTTP calls are blocked",
    ),
    SafetyRule(
        category="security_bypass",
        patterns=(
            r"setAbortAction\s*\(\s*false",
            r"setWorkflow\s*\(\s*false",
        ),
        action=RuleAction.BLOCK,
        reason="Business rule and workflow bypass is blocked",
    ),
    SafetyRule(
        category="dynamic_code",
        patterns=(
            r"GlideEvaluator",
            r"GlideScopedEvaluator",
            r"\beval\s*\(",
        ),
        action=RuleAction.BLOCK,
        reason="Dynamic code evaluation is blocked",
    ),
    SafetyRule(
        category="impersonation",
        patterns=(
            r"impersonateUser",
            r"setSessionUser",
            r"\.impersonate\s*\(",
        ),
        action=RuleAction.BLOCK,
        reason="User impersonation is blocked",
    ),
    SafetyRule(
        category="infinite_loop",
        patterns=(
            r"while\s*\(\s*true\s*\)",
            r"for\s*\(\s*;\s*;\s*\)",
        ),
        action=RuleAction.WARN,
        reason="Infinite loop detected - ensure an exit condition exists",
    ),
    SafetyRule(
        category="expensive_count",
        patterns=(r"getRowCount\s*\(\s*\)",),
        action=RuleAction.WARN,
        reason="getRowCount() can be slow on large tables",
    ),
)

# Operations that make a script capable of mutation, used by the mode layer
MUTATION_PATTERNS: tuple[tuple[str, str], ...] = (
    (r"\.insert\s*\(", "insert"),
    (r"\.insertWithReferences\s*\(", "insert"),
    (r"\.update\s*\(", "update"),
    (r"\.updateWithReferences\s*\(", "update"),
    (r"\.updateMultiple\s*\(", "update multiple"),
    (r"\.deleteRecord\s*\(", "delete"),
    (r"\.delete\s*\(", "delete"),
    (r"\.deleteMultiple\s*\(", "delete multiple"),
    (r"\.setAbortAction\s*\(", "abort control"),
    (r"GlideMultiple(Update|Delete)", "bulk mutation"),
)


@dataclass(frozen=True)
class ScriptExecutionRequest:
    """A background script submitted for execution."""

    script: str
    mode: ExecutionMode = ExecutionMode.READONLY
    timeout_seconds: int = 30
    scope: str | None = None
    description: str | None = None


@dataclass
class ScriptAnalysis:
    """Verdict for one script in one mode."""

    approved: bool
    mode: ExecutionMode
    reason: str | None = None
    matched_category: str | None = None
    blocked_reasons: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    mutations: list[str] = field(default_factory=list)

    @property
    def mutation_count(self) -> int:
        return len(self.mutations)

    def to_error(self) -> ServiceNowError:
        """Build the SCRIPT_BLOCKED error for a rejected script."""
        return ServiceNowError(
            ErrorKind.SCRIPT_BLOCKED,
            self.reason or "Script blocked",
            details={
                "category": self.matched_category,
                "blocked": list(self.blocked_reasons),
                "mutations": list(self.mutations),
            },
            suggestion=(
                "Use the ServiceNow UI with appropriate permissions for this operation"
                if self.matched_category != "mutation_in_readonly"
                else 'Use mode="dryrun" to preview changes or mode="execute" to apply them'
            ),
        )


class ScriptGuard:
    """Screens scripts against the rule table and enforces execution modes.

    Two independent layers apply:
    1. Rule table: any BLOCK match rejects the script in every mode.
    2. Mode layer: readonly rejects scripts with detected mutation
       operations, and every readonly or dryrun dispatch is wrapped so
       GlideRecord mutations are intercepted on the instance. The wrapper
       still applies when the detector misses a construct.
    """

    def __init__(self, rules: tuple[SafetyRule, ...] | list[SafetyRule] | None = None):
        """Initialize the guard.

        Args:
            rules: Rule table. Defaults to DEFAULT_RULES.
        """
        self.rules = tuple(rules if rules is not None else DEFAULT_RULES)
        self._compile_patterns()

    def _compile_patterns(self) -> None:
        """Pre-compile regex patterns for efficiency."""
        self._compiled_rules = [
            (rule, [re.compile(p, re.IGNORECASE) for p in rule.patterns])
            for rule in self.rules
        ]
        self._mutation_re = [
            (re.compile(p, re.IGNORECASE), operation)
            for p, operation in MUTATION_PATTERNS
        ]

    def match_rules(self, script: str) -> list[SafetyRule]:
        """Return every rule with at least one matching pattern, in table order."""
        return [
            rule
            for rule, patterns in self._compiled_rules
            if any(p.search(script) for p in patterns)
        ]

    def detect_mutations(self, script: str) -> list[str]:
        """List mutation operations found in the script, one per occurrence."""
        found: list[tuple[int, str]] = []
        for pattern, operation in self._mutation_re:
            found.extend((m.start(), operation) for m in pattern.finditer(script))
        return [operation for _, operation in sorted(found)]

    def analyze(self, script: str, mode: ExecutionMode | str) -> ScriptAnalysis:
        """Classify a script for the requested execution mode.

        Args:
            script: Script text.
            mode: Requested execution mode.

        Returns:
            ScriptAnalysis with the verdict. Rejections carry a reason and,
            when a rule matched, its category.
        """
        mode = ExecutionMode(mode)

        if not script or not script.strip():
            return ScriptAnalysis(
                approved=False,
                mode=mode,
                reason="Script cannot be empty",
                matched_category="empty_script",
            )

        matched = self.match_rules(script)
        blocking = [r for r in matched if r.action is RuleAction.BLOCK]
        warnings = [r.reason for r in matched if r.action is RuleAction.WARN]
        mutations = self.detect_mutations(script)

        if mutations and mode is ExecutionMode.EXECUTE:
            warnings.extend(
                f"Script contains {op} operation" for op in dict.fromkeys(mutations)
            )

        if blocking:
            return ScriptAnalysis(
                approved=False,
                mode=mode,
                reason=blocking[0].reason,
                matched_category=blocking[0].category,
                blocked_reasons=[r.reason for r in blocking],
                warnings=warnings,
                mutations=mutations,
            )

        if mode is ExecutionMode.READONLY and mutations:
            operations = ", ".join(dict.fromkeys(mutations))
            return ScriptAnalysis(
                approved=False,
                mode=mode,
                reason=(
                    f"Script contains data mutation operations ({operations}) "
                    "which are not allowed in readonly mode"
                ),
                matched_category="mutation_in_readonly",
                blocked_reasons=[f"Mutation not allowed in readonly mode: {operations}"],
                warnings=warnings,
                mutations=mutations,
            )

        return ScriptAnalysis(
            approved=True,
            mode=mode,
            warnings=warnings,
            mutations=mutations,
        )

    def prepare(self, script: str, mode: ExecutionMode | str) -> str:
        """Return the script text to dispatch for the given mode.

        readonly and dryrun scripts are wrapped in a mutation interceptor;
        execute scripts are sent unchanged.
        """
        mode = ExecutionMode(mode)
        if mode is ExecutionMode.EXECUTE:
            return script
        label = "[READONLY] blocked" if mode is ExecutionMode.READONLY else "[DRYRUN] not committed:"
        return wrap_mutation_guard(script, label)


def wrap_mutation_guard(script: str, label: str) -> str:
    """Wrap a script so GlideRecord mutations are recorded, not committed.

    Intercepted calls are appended to ``__foundry_mutations``, which the
    output capture wrapper reports back. Prototypes are restored afterwards.
    """
    return f"""
var __foundry_mutations = [];
var __foundry_restore = (function() {{
  var label = {label!r};
  var targets = [GlideRecord];
  if (typeof GlideRecordSecure !== 'undefined') {{ targets.push(GlideRecordSecure); }}
  var methods = ['insert', 'update', 'deleteRecord', 'deleteMultiple', 'updateMultiple'];
  var saved = [];
  for (var i = 0; i < targets.length; i++) {{
    for (var j = 0; j < methods.length; j++) {{
      (function(proto, name) {{
        saved.push([proto, name, proto[name]]);
        proto[name] = function() {{
          __foundry_mutations.push(label + ' ' + name + ' on ' + this.getTableName());
          return name == 'deleteRecord' ? false : null;
        }};
      }})(targets[i].prototype, methods[j]);
    }}
  }}
  return function() {{
    for (var k = 0; k < saved.length; k++) {{ saved[k][0][saved[k][1]] = saved[k][2]; }}
  }};
}})();
try {{
{script}
}} finally {{
  __foundry_restore();
}}
"""
