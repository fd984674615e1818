"""
Locators for the timetable portal form.

The form is a PrimeFaces page: every dropdown is a div.ui-selectonemenu
whose generated id (e.g. "form:j_idt175") changes between deployments and
page states, and its options live in a separate "<id>_panel" list with ids
"<id>_<index>". Only the structural paths below are stable.
"""

ROOT = 'table[style="width:100%;"] > tbody > tr > td:nth-of-type(3)'

PROGRAM_MENU = f"{ROOT} table > tbody > tr:nth-of-type(2) td div.ui-selectonemenu"
GRADE_MENU = f"{ROOT} table > tbody > tr:nth-of-type(3) td div.ui-selectonemenu"
PROJECT_MENU = f"{ROOT} table > tbody > tr:nth-of-type(4) td div.ui-selectonemenu"

EXPORT_BUTTON_TEXT = "Izpisi"
EXCEL_BUTTON_TEXT = "Izpis (Excel)"


def by_id(element_id: str) -> str:
    """CSS selector for an id that may contain ':' (JSF naming)."""
    return f"[id='{element_id}']"


def menu_panel_items(menu_id: str) -> str:
    return f"[id='{menu_id}_panel'] li"


def menu_option(menu_id: str, option_suffix) -> str:
    return by_id(f"{menu_id}_{option_suffix}")


def option_suffix(menu_id: str, item_id: str) -> str:
    """Strip the menu id from an option id: "form:j_idt175_7" -> "7"."""
    prefix = f"{menu_id}_"
    if menu_id and item_id.startswith(prefix):
        return item_id[len(prefix):]
    return item_id


def button_text_span(text: str) -> str:
    return (
        "//span[contains(concat(' ', normalize-space(@class), ' '), ' ui-button-text ')"
        f" and contains(normalize-space(.), '{text}')]"
    )
