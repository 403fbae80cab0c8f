import json
import unittest
from datetime import date

from weekplan.models import ScheduleItem, empty_schedule, week_dates
from weekplan.planner import (
    SYSTEM_PROMPT,
    AgentMessage,
    ScheduleBlock,
    ScheduleProposal,
    block_to_item,
    build_messages,
    build_planning_payload,
    priority_for_block_type,
    resolve_day_key,
)


class DayKeyTests(unittest.TestCase):
    def test_short_and_full_names(self) -> None:
        self.assertEqual(resolve_day_key("Mon"), "Mon")
        self.assertEqual(resolve_day_key("thursday"), "Thu")
        self.assertEqual(resolve_day_key(" SUNDAY "), "Sun")

    def test_unknown_day_raises(self) -> None:
        with self.assertRaises(ValueError):
            resolve_day_key("Someday")


class ProposalParsingTests(unittest.TestCase):
    def test_unknown_update_type_degrades_to_none(self) -> None:
        self.assertEqual(ScheduleProposal.from_dict({"update_type": "rewrite"}).update_type, "none")
        self.assertEqual(ScheduleProposal.from_dict(None).update_type, "none")

    def test_partial_changes_drop_unknown_actions(self) -> None:
        proposal = ScheduleProposal.from_dict(
            {
                "update_type": "partial",
                "changes": [
                    {"action": "remove", "day": "Mon", "match_title": "gym"},
                    {"action": "teleport", "day": "Mon"},
                    "not a change",
                ],
            }
        )
        self.assertEqual([change.action for change in proposal.changes], ["remove"])

    def test_block_times_are_normalized(self) -> None:
        block = ScheduleBlock.from_dict({"title": "Run", "start_time": "7:05", "end_time": "25:00"})
        self.assertEqual(block.start_time, "07:05")
        self.assertEqual(block.end_time, "")
        self.assertFalse(block.has_times)


class BlockConversionTests(unittest.TestCase):
    def test_block_to_item(self) -> None:
        block = ScheduleBlock.from_dict(
            {"title": "Bio 110", "type": "class", "start_time": "13:00", "end_time": "14:15", "location": "Hall B"}
        )
        item = block_to_item(block, 42, date(2024, 10, 15))
        self.assertEqual(item.id, 42)
        self.assertEqual(item.title, "Bio 110 @ Hall B")
        self.assertEqual(item.time, "1:00 PM - 2:15 PM")
        self.assertEqual(item.due_date, "2024-10-15")
        self.assertEqual(item.priority, "high")
        self.assertFalse(item.completed)

    def test_block_without_times_is_dropped(self) -> None:
        self.assertIsNone(block_to_item(ScheduleBlock(title="Nap"), 1, "2024-10-15"))

    def test_priority_defaults_to_medium(self) -> None:
        self.assertEqual(priority_for_block_type("personal"), "low")
        self.assertEqual(priority_for_block_type("mystery"), "medium")
        self.assertEqual(priority_for_block_type(None), "medium")


class AgentMessageTests(unittest.TestCase):
    def test_text_from_content_string(self) -> None:
        message = AgentMessage.from_dict({"role": "user", "content": "Move gym to Friday"})
        self.assertEqual(message.text, "Move gym to Friday")

    def test_text_from_typed_parts(self) -> None:
        message = AgentMessage.from_dict(
            {
                "role": "assistant",
                "parts": [
                    {"type": "text", "text": "Done. "},
                    {"type": "tool-call", "name": "update_schedule"},
                    {"type": "text", "text": "Anything else?"},
                ],
            }
        )
        self.assertEqual(message.text, "Done. Anything else?")

    def test_build_messages_skips_other_roles_and_empty_text(self) -> None:
        store = empty_schedule()
        store["Mon"].append(ScheduleItem(id=1, title="Math Study", due_date="2024-10-14"))
        payload = build_planning_payload(
            schedule=store,
            week=week_dates(date(2024, 10, 16)),
            term_name="Fall 2024",
            term_end=date(2024, 12, 13),
            preferences={"wake_time": "07:00"},
        )
        conversation = [
            AgentMessage.from_dict({"role": "user", "content": "Plan my week"}),
            AgentMessage.from_dict({"role": "system", "content": "ignored"}),
            AgentMessage.from_dict({"role": "assistant", "parts": []}),
        ]
        messages = build_messages(payload, conversation)
        self.assertEqual(messages[0], {"role": "system", "content": SYSTEM_PROMPT})
        context = json.loads(messages[1]["content"])
        self.assertEqual(context["week"][0], "2024-10-14")
        self.assertEqual(context["term"]["end_date"], "2024-12-13")
        self.assertEqual(context["schedule"]["Mon"][0]["title"], "Math Study")
        self.assertEqual(messages[2:], [{"role": "user", "content": "Plan my week"}])


if __name__ == "__main__":
    unittest.main()
