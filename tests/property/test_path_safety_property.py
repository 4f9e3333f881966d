from pathlib import Path

from hypothesis import given
from hypothesis import strategies as st

from devloop.core.rerun import BULK_EVENT_THRESHOLD, classify
from devloop.errors import PathSafetyError
from devloop.models.events import ChangeOp, WatchEvent
from devloop.models.project import Project, WatchConfig

ROOT = Path("/srv/devloop-property/demo")

segments = st.sampled_from(["..", ".", "app", "build", "a b", "node_modules", "x.go"])


@given(st.lists(segments, min_size=1, max_size=6))
def test_resolved_ledger_paths_stay_under_root(parts: list[str]) -> None:
    project = Project(repo="me/demo", dest=str(ROOT))
    rel_path = "/".join(parts)
    try:
        resolved = project.resolve(rel_path)
    except PathSafetyError:
        return
    assert project.root in resolved.parents


@given(st.integers(min_value=BULK_EVENT_THRESHOLD + 1, max_value=200))
def test_bulk_batches_always_rebuild_both(size: int) -> None:
    batch = [WatchEvent(path=f"{ROOT}/f{index}", op=ChangeOp.WRITE) for index in range(size)]
    result = classify(batch, WatchConfig(), root=ROOT)
    assert result.frontend and result.backend
