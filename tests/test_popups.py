import pytest

import tickr
from helpers import press, tick, type_text


@pytest.fixture
def state(db, seeded):
    return tickr.AppState(db)


@pytest.mark.parametrize('raw, expected', [
    ("#ff5733", "#FF5733"),
    ("00aaFF", "#00AAFF"),
    ("  #123abc ", "#123ABC"),
    ("zzzzzz", None),
    ("#12345", None),
    ("#1234567", None),
    ("", None),
    (None, None),
])
def test_normalize_hex_color(raw, expected):
    assert tickr.normalize_hex_color(raw) == expected


def test_new_category_popup_creates_and_selects(state, db):
    press(state, 'c', 'n')
    assert isinstance(state.popup, tickr.NewCategoryPopup)
    type_text(state, "Writing")
    press(state, 'tab')
    type_text(state, "00aaff")
    press(state, 'enter')

    assert state.popup is None
    assert state.status == "Category created."
    created = db.get_category_by_name("Writing")
    assert created.color == "#00AAFF"
    assert state.categories_list[state.cursor('categories')].id == created.id


def test_new_category_popup_rejects_bad_color(state, db):
    press(state, 'c', 'n')
    type_text(state, "Bad")
    press(state, 'tab')
    type_text(state, "zzzzzz")
    press(state, 'enter')
    assert isinstance(state.popup, tickr.NewCategoryPopup)
    assert state.status == "Color must be a 6-digit hex value."
    assert db.get_category_by_name("Bad") is None


def test_new_category_popup_requires_name(state):
    press(state, 'c', 'n', 'enter')
    assert state.status == "Category name is required."
    assert state.popup is not None
    press(state, 'escape')
    assert state.popup is None
    assert state.status is None


def test_new_category_duplicate_keeps_popup_open(state):
    press(state, 'c', 'n')
    type_text(state, "Design")
    press(state, 'tab')
    type_text(state, "#000000")
    press(state, 'enter')
    assert isinstance(state.popup, tickr.NewCategoryPopup)
    assert state.status.startswith("Failed to create category 'Design'")


def test_popup_swallows_global_keys(state):
    press(state, 'c', 'n')
    type_text(state, "qhp")
    assert state.running
    assert state.view == tickr.View.CATEGORIES
    assert state.popup.name == "qhp"


def test_edit_popup_updates_label_and_category(state, db, seeded):
    press(state, 't', 'down', 'enter')
    assert state.selected_tickr.description == "Review PR"
    press(state, 'e')
    popup = state.popup
    assert isinstance(popup, tickr.EditTickrPopup)
    assert [c.name for c in popup.categories] == ["none", "Design"]
    assert popup.category_index == 0

    press(state, 'backspace', 'backspace')
    type_text(state, "R!")
    press(state, 'down', 'enter')

    assert state.popup is None
    assert state.status == "Task updated."
    fresh = db.get_task(seeded['review'].id)
    assert fresh.description == "Review R!"
    assert fresh.category_id == seeded['design'].id
    assert state.selected_tickr.description == "Review R!"
    assert state.categories[seeded['design'].id].name == "Design"
    assert any(t.description == "Review R!" for t in state.tickrs)


def test_edit_popup_preselects_current_category_and_cycles(state):
    press(state, 't', 'enter', 'e')
    popup = state.popup
    assert popup.selected_category_id is not None
    press(state, 'down')
    assert popup.selected_category_id is None
    press(state, 'up')
    assert popup.category_index == 1


def test_edit_only_in_detail_view(state):
    press(state, 't', 'e')
    assert state.popup is None


def test_new_tickr_popup_preselects_project_and_starts(state, db):
    press(state, 'p', 'down', 'n')
    popup = state.popup
    assert isinstance(popup, tickr.NewTickrPopup)
    assert popup.selected_project.name == "beta"
    assert popup.start_now is True
    type_text(state, "Retro notes")
    press(state, 'enter')

    assert state.popup is None
    assert state.status == "Task created and started."
    running = db.running_task_ids()
    assert len(running) == 1
    assert db.get_task(running[0]).description == "Retro notes"
    assert state.running_tickr_id == running[0]
    assert state.running_project_name == "beta"


def test_new_tickr_popup_without_starting(state, db, seeded):
    press(state, 'p', 'enter', 'n')
    popup = state.popup
    assert popup.selected_project.name == "Alpha"
    type_text(state, "Docs")
    press(state, 'tab', 'down')
    assert popup.selected_project.name == "beta"
    press(state, 'tab', 'down')
    assert popup.selected_category_id == seeded['design'].id
    press(state, 'tab', ' ')
    assert popup.start_now is False
    press(state, 'enter')

    assert state.status == "Task created."
    assert db.running_task_ids() == []
    created = [t for t in db.list_tasks() if t.description == "Docs"]
    assert len(created) == 1
    assert created[0].project_id == seeded['beta'].id
    assert created[0].category_id == seeded['design'].id


def test_new_tickr_popup_space_in_label(state):
    press(state, 'p', 'n')
    type_text(state, "a b")
    assert state.popup.label == "a b"
    assert state.popup.start_now is True


def test_new_tickr_requires_label(state):
    press(state, 'p', 'n', ' ', 'enter')
    assert state.status == "Task label is required."
    assert state.popup is not None


def test_new_tickr_without_projects(db):
    state = tickr.AppState(db)
    press(state, 'p', 'n')
    assert state.popup is None
    assert state.status == "No projects available."


def test_new_only_in_matching_views(state):
    press(state, 't', 'n')
    assert state.popup is None
    press(state, 'h', 'n')
    assert state.popup is None


def test_delete_confirm_yes_and_no(state, db, seeded):
    press(state, 't', 'd')
    assert isinstance(state.popup, tickr.ConfirmPopup)
    assert "Write report" in state.popup.message
    assert "1 interval" in state.popup.message
    press(state, 'x')
    assert state.popup is not None
    press(state, 'n')
    assert state.popup is None
    assert db.get_task(seeded['write'].id) is not None

    press(state, 'd', 'y')
    assert state.popup is None
    assert db.get_task(seeded['write'].id) is None
    assert state.status == "Task deleted."
    assert [t.description for t in state.tickrs] == ["Review PR", "Plan sprint"]


def test_delete_from_detail_returns_to_list(state, db, seeded):
    press(state, 't', 'enter', 'd', 'enter')
    assert state.view == tickr.View.TICKRS
    assert state.selected_tickr is None
    assert db.get_task(seeded['write'].id) is None


def test_edit_popup_closes_when_tick_finds_task_deleted(state, db, seeded):
    press(state, 't', ' ', 'enter', 'e')
    assert isinstance(state.popup, tickr.EditTickrPopup)
    db.delete_task(seeded['write'].id)
    tick(state)
    assert state.popup is None
    assert state.view == tickr.View.TICKRS
    assert state.status == "Task not found."


def test_edit_submit_for_deleted_task_reports_not_found(state, db, seeded):
    press(state, 't', 'enter', 'e')
    db.delete_task(seeded['write'].id)
    type_text(state, "!")
    press(state, 'enter')
    assert state.popup is None
    assert state.view == tickr.View.TICKRS
    assert state.status == "Task not found."
    assert db.get_task(seeded['write'].id) is None
