"""
Plan Store Tests

Test list:
1. test_create_and_approve - Draft plans get ids, order and approval
2. test_step_lifecycle_roll_up - Step mutators roll up the plan status
3. test_out_of_range_index - Bad indexes are ignored
4. test_reset_step - Failed steps go back in the queue
5. test_parse_json_block - Fenced JSON plans in an LLM response
6. test_parse_markdown_plan - Markdown headings, numbered and checkbox steps
7. test_load_plan_file - JSON, YAML and Markdown files; errors
8. test_malformed_steps - Steps that are neither mappings nor strings
"""

import json

import pytest

from plan_store import PlanParseError, PlanStore, load_plan_file, parse_plan_from_response
from schemas import PlanStatus, StepStatus


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def store():
    """A store holding an unapproved three-step plan."""
    store = PlanStore()
    store.create_plan("Release", "Ship it", [
        {"title": "Build", "description": "Run the build", "estimated_tokens": 100},
        {"title": "Test", "description": "Run the tests"},
        {"title": "Tag", "description": "Tag the release"},
    ])
    return store


# =============================================================================
# TEST 1-4: Store
# =============================================================================

def test_create_and_approve(store):
    """
    Test 1: Draft plans get ids, order and approval.
    """
    plan = store.current_plan
    assert plan.status == PlanStatus.DRAFT
    assert store.is_plan_approved is False
    assert [s.order for s in plan.steps] == [1, 2, 3]
    assert len({s.id for s in plan.steps}) == 3
    assert all(s.status == StepStatus.PENDING for s in plan.steps)
    assert plan.total_estimated_tokens == 100

    store.approve_plan()
    assert store.is_plan_approved is True
    assert plan.status == PlanStatus.APPROVED
    assert plan.approved_at is not None

    store.reject_plan()
    assert store.is_plan_approved is False
    assert plan.status == PlanStatus.CANCELLED

    store.clear_plan()
    assert store.current_plan is None
    assert store.next_pending_step() is None

    print("✓ Test 1 passed: Plan lifecycle works")


def test_step_lifecycle_roll_up(store):
    """
    Test 2: Step mutators roll up the plan status.

    Verifies:
    - start_step marks in-progress and the plan executing
    - complete_step records tokens
    - a failed step fails the plan
    - all complete/skipped completes the plan
    """
    store.approve_plan()
    plan = store.current_plan

    store.start_step(0)
    assert plan.steps[0].status == StepStatus.IN_PROGRESS
    assert plan.status == PlanStatus.EXECUTING
    assert plan.current_step_index == 0
    assert store.current_step().id == plan.steps[0].id

    store.complete_step(0, 120)
    assert plan.steps[0].status == StepStatus.COMPLETE
    assert plan.steps[0].actual_tokens == 120
    assert plan.total_actual_tokens == 120
    assert store.next_pending_step().title == "Test"
    assert store.progress() == 33

    store.fail_step(1, "boom")
    assert plan.steps[1].error == "boom"
    assert plan.status == PlanStatus.FAILED

    store.skip_step(1)
    store.skip_step(2)
    assert plan.status == PlanStatus.COMPLETED
    assert plan.completed_at is not None
    assert store.progress() == 100
    assert store.next_pending_step() is None

    print("✓ Test 2 passed: Status rolls up to the plan")


def test_out_of_range_index(store):
    """
    Test 3: Bad indexes are ignored.
    """
    store.start_step(7)
    store.complete_step(-1, 10)
    store.fail_step(3, "nope")

    assert all(s.status == StepStatus.PENDING for s in store.current_plan.steps)
    assert store.get_step(3) is None
    assert store.index_of("missing") == -1


def test_reset_step(store):
    """
    Test 4: Failed steps go back in the queue.
    """
    store.approve_plan()
    store.start_step(0)
    store.fail_step(0, "flaky")
    assert store.current_plan.status == PlanStatus.FAILED

    store.reset_step(0)
    step = store.get_step(0)
    assert step.status == StepStatus.PENDING
    assert step.error is None
    assert store.current_plan.status == PlanStatus.EXECUTING
    assert store.next_pending_step().id == step.id

    print("✓ Test 4 passed: Reset step is pending again")


# =============================================================================
# TEST 5-7: Parsing
# =============================================================================

def test_parse_json_block():
    """
    Test 5: Fenced JSON plans in an LLM response.
    """
    response = """Here is the plan:

```json
{
  "title": "Add login",
  "summary": "Session based auth",
  "steps": [
    {"title": "Model", "description": "Create the user model", "estimatedTokens": 900},
    {"name": "Routes", "details": "Add /login", "substeps": ["GET", {"title": "POST"}]}
  ]
}
```
"""
    store = PlanStore()
    plan = parse_plan_from_response(response, store)

    assert plan is not None
    assert store.current_plan is plan
    assert plan.title == "Add login"
    assert plan.summary == "Session based auth"
    assert [s.title for s in plan.steps] == ["Model", "Routes"]
    assert plan.steps[0].estimated_tokens == 900
    assert plan.steps[1].description == "Add /login"
    assert [sub.title for sub in plan.steps[1].substeps] == ["GET", "POST"]

    print("✓ Test 5 passed: JSON block parsed")


def test_parse_markdown_plan():
    """
    Test 6: Markdown headings, numbered and checkbox steps.

    Verifies:
    - `# Title` becomes the plan title
    - Text before the first step is the summary
    - Lines after a step are its description
    - Text without steps parses to None
    """
    response = """# Migrate database

Move from SQLite to Postgres.

1. **Dump data**
   Export every table to CSV.
2. **Load data**
   Import the CSVs.
- [ ] Switch config
"""
    plan = parse_plan_from_response(response)

    assert plan.title == "Migrate database"
    assert plan.summary == "Move from SQLite to Postgres."
    assert [s.title for s in plan.steps] == ["Dump data", "Load data", "Switch config"]
    assert plan.steps[0].description == "Export every table to CSV."

    assert parse_plan_from_response("Nothing to see here.") is None

    untitled = parse_plan_from_response("1. Only step")
    assert untitled.title == "Execution Plan"

    print("✓ Test 6 passed: Markdown plan parsed")


def test_load_plan_file(tmp_path):
    """
    Test 7: JSON, YAML and Markdown files; errors.
    """
    json_file = tmp_path / "plan.json"
    json_file.write_text(json.dumps({"title": "J", "steps": [{"title": "one"}, "two"]}))
    plan = load_plan_file(json_file)
    assert [s.title for s in plan.steps] == ["one", "two"]

    yaml_file = tmp_path / "plan.yaml"
    yaml_file.write_text("title: Y\nsteps:\n  - title: a\n    estimated_tokens: 5\n")
    plan = load_plan_file(yaml_file)
    assert plan.title == "Y"
    assert plan.steps[0].estimated_tokens == 5

    md_file = tmp_path / "plan.md"
    md_file.write_text("# M\n\n1. First\n2. Second\n")
    store = PlanStore()
    plan = load_plan_file(md_file, store)
    assert store.current_plan is plan
    assert plan.total_steps == 2

    with pytest.raises(FileNotFoundError):
        load_plan_file(tmp_path / "missing.md")

    empty = tmp_path / "empty.md"
    empty.write_text("just prose\n")
    with pytest.raises(PlanParseError):
        load_plan_file(empty)

    broken = tmp_path / "broken.json"
    broken.write_text("{not json")
    with pytest.raises(PlanParseError):
        load_plan_file(broken)

    print("✓ Test 7 passed: Plan files load")


def test_malformed_steps(tmp_path):
    """
    Test 8: Steps that are neither mappings nor strings.

    Plan files report a PlanParseError; a malformed JSON block in a
    response falls back to the Markdown plan around it.
    """
    json_file = tmp_path / "plan.json"
    json_file.write_text(json.dumps({"title": "t", "steps": [None, 3]}))
    with pytest.raises(PlanParseError, match="Step 1"):
        load_plan_file(json_file)

    yaml_file = tmp_path / "plan.yaml"
    yaml_file.write_text("title: t\nsteps:\n  - ok\n  - 42\n")
    with pytest.raises(PlanParseError, match="Step 2"):
        load_plan_file(yaml_file)

    bad_substeps = tmp_path / "substeps.json"
    bad_substeps.write_text(json.dumps({
        "title": "t",
        "steps": [{"title": "a", "substeps": [None]}],
    }))
    with pytest.raises(PlanParseError, match="substep"):
        load_plan_file(bad_substeps)

    not_a_list = tmp_path / "substeps.yaml"
    not_a_list.write_text("title: t\nsteps:\n  - title: a\n    substeps: 7\n")
    with pytest.raises(PlanParseError, match="must be a list"):
        load_plan_file(not_a_list)

    response = """# Fallback

```json
{"title": "x", "steps": [null]}
```

1. Real step
"""
    plan = parse_plan_from_response(response)
    assert plan is not None
    assert plan.title == "Fallback"
    assert [s.title for s in plan.steps] == ["Real step"]

    print("✓ Test 8 passed: Malformed steps rejected")
