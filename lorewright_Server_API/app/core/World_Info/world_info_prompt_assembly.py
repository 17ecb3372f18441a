# world_info_prompt_assembly.py
# Description: Route activated world-info entries into prompt channels.
#
# Imports
from typing import Iterable, List

#
# Local Imports
from lorewright_Server_API.app.core.World_Info.world_info_types import (
    DepthEntry,
    PreparedWorldInfoEntry,
    WorldInfoPosition,
    WorldInfoPromptOutput,
    WorldInfoSettings,
)

#######################################################################################################################
#
# Functions


def render_entry_content(entry: PreparedWorldInfoEntry, settings: WorldInfoSettings) -> str:
    content = entry.content.strip()
    if not content or not settings.include_names:
        return content
    prefix = entry.comment.strip() or entry.book_name.strip()
    return f"{prefix}: {content}" if prefix else content


def assemble_world_info_prompt_output(
    activated_entries: Iterable[PreparedWorldInfoEntry],
    settings: WorldInfoSettings,
) -> WorldInfoPromptOutput:
    """
    Sort activated entries by order (desc) then uid and split them by position.

    Unknown positions fall back to "before". Entries whose content is empty
    after trimming contribute nothing.
    """
    output = WorldInfoPromptOutput()
    before: List[str] = []
    after: List[str] = []
    lists = {
        WorldInfoPosition.AN_TOP: output.an_top,
        WorldInfoPosition.AN_BOTTOM: output.an_bottom,
        WorldInfoPosition.EM_TOP: output.em_top,
        WorldInfoPosition.EM_BOTTOM: output.em_bottom,
        WorldInfoPosition.AFTER: after,
    }

    for entry in sorted(activated_entries, key=lambda e: (-e.order, e.uid)):
        content = render_entry_content(entry, settings)
        if not content:
            continue

        if entry.position == WorldInfoPosition.AT_DEPTH:
            output.depth_entries.append(
                DepthEntry(depth=entry.depth, role=entry.role, content=content, book_id=entry.book_id, uid=entry.uid)
            )
        elif entry.position == WorldInfoPosition.OUTLET:
            outlet = entry.outlet_name.strip() or "default"
            output.outlet_entries.setdefault(outlet, []).append(content)
        elif entry.position in lists:
            lists[entry.position].append(content)
        else:
            before.append(content)

    output.world_info_before = "\n".join(before)
    output.world_info_after = "\n".join(after)
    return output

#
# End of world_info_prompt_assembly.py
#######################################################################################################################
