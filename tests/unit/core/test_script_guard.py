"""Tests for background script screening."""

import pytest

from foundry_mcp.core.errors import ErrorKind
from foundry_mcp.core.script_guard import (
    ExecutionMode,
    RuleAction,
    SafetyRule,
    ScriptGuard,
)


@pytest.fixture
def guard() -> ScriptGuard:
    """Provide a guard with the default rule table."""
    return ScriptGuard()


# =============================================================================
# Rule Table
# =============================================================================


class TestBlockRules:
    """Test that rule table BLOCK entries reject scripts."""

    @pytest.mark.parametrize(
        ("script", "category"),
        [
            ("var gr = new GlideRecord('incident'); gr.deleteMultiple();", "record_deletion"),
            ("var gr = new GlideRecord('incident'); gr.updateMultiple();", "bulk_operation"),
            ("var tc = new GlideTableCreator('u_x', 'X');", "table_structure"),
            ("gs.setProperty('glide.security.strict', 'false');", "system_property_write"),
            ("var gr = new GlideRecord('discovery_credentials'); gr.query();", "credential_access"),
            ("user.password = 'abc';", "credential_access"),
            (
                "var gr = new GlideRecord('sys_user_has_role'); gr.initialize(); gr.insert();",
                "role_manipulation",
            ),
            ("var r = new sn_ws.RESTMessageV2();", "outbound_network"),
            ("current.setWorkflow(false);", "security_bypass"),
            ("eval('1+1');", "dynamic_code"),
            ("new GlideScopedEvaluator().evaluateScript(gr, 'script');", "dynamic_code"),
            ("gs.getSession().impersonate('admin');", "impersonation"),
        ],
    )
    @pytest.mark.parametrize("mode", list(ExecutionMode))
    def test_blocked_in_every_mode(
        self, guard: ScriptGuard, script: str, category: str, mode: ExecutionMode
    ) -> None:
        """A BLOCK match should reject the script regardless of mode."""
        analysis = guard.analyze(script, mode)

        assert analysis.approved is False
        assert analysis.matched_category == category
        assert analysis.reason

    def test_first_matching_category_reported(self, guard: ScriptGuard) -> None:
        """With several BLOCK matches, the earliest table entry wins."""
        analysis = guard.analyze(
            "gs.setProperty('a', 'b'); gr.deleteMultiple();", ExecutionMode.EXECUTE
        )

        assert analysis.matched_category == "record_deletion"
        assert len(analysis.blocked_reasons) == 2

    def test_read_only_query_approved(self, guard: ScriptGuard) -> None:
        """A plain query script should pass in readonly mode."""
        script = (
            "var gr = new GlideRecord('incident');\n"
            "gr.addQuery('active', true);\n"
            "gr.query();\n"
            "while (gr.next()) { gs.info(gr.number); }"
        )

        analysis = guard.analyze(script, ExecutionMode.READONLY)

        assert analysis.approved is True
        assert analysis.mutations == []
        assert analysis.warnings == []

    def test_get_property_is_allowed(self, guard: ScriptGuard) -> None:
        """Reading a property should not match the property write rule."""
        assert guard.analyze("gs.info(gs.getProperty('x'));", "readonly").approved is True

    def test_custom_rule_table(self) -> None:
        """A supplied rule table should replace the defaults."""
        guard = ScriptGuard(rules=[
            SafetyRule("no_logging", (r"gs\.log",), RuleAction.BLOCK, "No gs.log"),
        ])

        assert guard.analyze("gs.log('x');", "execute").matched_category == "no_logging"
        assert guard.analyze("gr.deleteMultiple();", "execute").approved is True


class TestWarnRules:
    """Test WARN entries."""

    @pytest.mark.parametrize(
        "script",
        ["while (true) { break; }", "for (;;) { break; }"],
    )
    def test_infinite_loop_warns(self, guard: ScriptGuard, script: str) -> None:
        """Infinite loop constructs should warn but not block."""
        analysis = guard.analyze(script, ExecutionMode.READONLY)

        assert analysis.approved is True
        assert any("Infinite loop" in w for w in analysis.warnings)

    def test_row_count_warns(self, guard: ScriptGuard) -> None:
        """getRowCount() should produce a performance warning."""
        analysis = guard.analyze("gr.query(); gs.info(gr.getRowCount());", "readonly")

        assert analysis.approved is True
        assert any("getRowCount" in w for w in analysis.warnings)


# =============================================================================
# Mode Layer
# =============================================================================


class TestModeLayer:
    """Test readonly, dryrun and execute handling of mutations."""

    SCRIPT = "var gr = new GlideRecord('incident'); gr.get('abc'); gr.state = 2; gr.update();"

    def test_readonly_rejects_mutation(self, guard: ScriptGuard) -> None:
        """readonly should reject a detected mutation."""
        analysis = guard.analyze(self.SCRIPT, ExecutionMode.READONLY)

        assert analysis.approved is False
        assert analysis.matched_category == "mutation_in_readonly"
        assert "update" in analysis.reason
        assert analysis.mutation_count == 1

    def test_dryrun_allows_mutation(self, guard: ScriptGuard) -> None:
        """dryrun should approve a mutation and still report it."""
        analysis = guard.analyze(self.SCRIPT, ExecutionMode.DRYRUN)

        assert analysis.approved is True
        assert analysis.mutations == ["update"]

    def test_execute_warns_on_mutation(self, guard: ScriptGuard) -> None:
        """execute should approve and warn once per mutation kind."""
        analysis = guard.analyze(self.SCRIPT + " gr.update();", ExecutionMode.EXECUTE)

        assert analysis.approved is True
        assert analysis.warnings == ["Script contains update operation"]
        assert analysis.mutations == ["update", "update"]

    def test_mode_accepts_strings(self, guard: ScriptGuard) -> None:
        """Modes given as strings should be coerced."""
        assert guard.analyze("gs.info(1);", "dryrun").mode is ExecutionMode.DRYRUN

    def test_invalid_mode_raises(self, guard: ScriptGuard) -> None:
        """Unknown modes should raise ValueError."""
        with pytest.raises(ValueError):
            guard.analyze("gs.info(1);", "yolo")

    @pytest.mark.parametrize("script", ["", "   \n  "])
    def test_empty_script_rejected(self, guard: ScriptGuard, script: str) -> None:
        """Empty scripts should be rejected in every mode."""
        analysis = guard.analyze(script, ExecutionMode.EXECUTE)

        assert analysis.approved is False
        assert analysis.matched_category == "empty_script"


class TestDetectMutations:
    """Test mutation detection."""

    def test_occurrences_in_source_order(self, guard: ScriptGuard) -> None:
        """Each occurrence should be listed in the order it appears."""
        script = "a.insert(); b.deleteRecord(); c.update(); d.insert();"

        assert guard.detect_mutations(script) == ["insert", "delete", "update", "insert"]

    def test_multiple_variants_not_double_counted(self, guard: ScriptGuard) -> None:
        """updateMultiple() should not also count as update()."""
        assert guard.detect_mutations("gr.updateMultiple();") == ["update multiple"]

    def test_no_mutations(self, guard: ScriptGuard) -> None:
        """Query-only scripts should report no mutations."""
        assert guard.detect_mutations("gr.query(); gr.next();") == []


class TestBlockedError:
    """Test conversion of rejections to errors."""

    def test_to_error_is_script_blocked(self, guard: ScriptGuard) -> None:
        """Rejected analyses should convert to SCRIPT_BLOCKED errors."""
        error = guard.analyze("gr.deleteMultiple();", "execute").to_error()

        assert error.kind is ErrorKind.SCRIPT_BLOCKED
        assert error.details["category"] == "record_deletion"
        assert error.suggestion

    def test_readonly_suggestion_points_to_modes(self, guard: ScriptGuard) -> None:
        """Readonly mutation rejections should suggest dryrun or execute."""
        error = guard.analyze("gr.insert();", "readonly").to_error()

        assert "dryrun" in error.suggestion


class TestPrepare:
    """Test dispatch preparation."""

    def test_execute_unchanged(self, guard: ScriptGuard) -> None:
        """execute scripts should be sent as written."""
        assert guard.prepare("gr.insert();", ExecutionMode.EXECUTE) == "gr.insert();"

    @pytest.mark.parametrize(
        ("mode", "label"),
        [(ExecutionMode.READONLY, "[READONLY]"), (ExecutionMode.DRYRUN, "[DRYRUN]")],
    )
    def test_wrapped_modes(self, guard: ScriptGuard, mode: ExecutionMode, label: str) -> None:
        """readonly and dryrun scripts should run inside the mutation interceptor."""
        prepared = guard.prepare("gs.info('hi');", mode)

        assert "gs.info('hi');" in prepared
        assert "__foundry_mutations" in prepared
        assert "__foundry_restore()" in prepared
        assert label in prepared
