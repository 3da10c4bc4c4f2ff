"""Shared test fixtures: one fresh StateManager per test, rooted in tmp_path."""

from pathlib import Path

import pytest

from planstate.state.manager import StateManager


@pytest.fixture()
def manager(tmp_path: Path) -> StateManager:
    """Initialized manager for an empty project."""
    mgr = StateManager(tmp_path)
    mgr.init_project("shop", description="Demo shop", goals=["Ship checkout"], constraints=["No new deps"])
    return mgr


@pytest.fixture()
def sequential_plan(manager: StateManager):
    """One sequential staging with tasks A and B, B depending on A."""
    plan = manager.create_plan("Checkout", stagings=[{
        "name": "Backend",
        "execution_type": "sequential",
        "tasks": [
            {"title": "A"},
            {"title": "B", "depends_on_index": [0]},
        ],
    }])
    staging = manager.get_plan_stagings(plan.id)[0]
    task_a, task_b = manager.get_staging_tasks(staging.id)
    return plan, staging, task_a, task_b


@pytest.fixture()
def two_staging_plan(manager: StateManager):
    """Two parallel stagings; the second references the first's only task."""
    plan = manager.create_plan("Catalog", description="Product catalog", stagings=[
        {"name": "Design", "tasks": [{"title": "Schema draft"}]},
        {
            "name": "Build",
            "depends_on_staging_indices": [0],
            "tasks": [
                {"title": "Implement API", "cross_staging_task_refs": [{"staging_index": 0, "task_index": 0}]},
                {"title": "Write docs", "priority": "low"},
            ],
        },
    ])
    first, second = manager.get_plan_stagings(plan.id)
    return plan, first, second
