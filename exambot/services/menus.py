"""
Menu screens.  Rendering only: nothing here touches sessions.
"""
import math
from typing import Optional

from exambot.core.config import Settings
from exambot.models.events import (
    BackToMain,
    ConfirmStartExam,
    ListCategories,
    ListExamsInCategory,
    Noop,
    OpenAdminPanel,
    OpenStudentPanel,
    ShowExam,
    StartAddExam,
)
from exambot.services.catalog import Catalog
from exambot.services.outbox import Button, Keyboard, Outbox


class Menus:
    def __init__(self, catalog: Catalog, outbox: Outbox, settings: Settings):
        self.catalog = catalog
        self.outbox = outbox
        self.settings = settings

    async def main(self, user_id: str, message_id: Optional[int] = None) -> None:
        if self.settings.is_operator(user_id):
            keyboard = [
                [Button("👑 Admin panel", OpenAdminPanel())],
                [Button("🎓 Student panel", OpenStudentPanel())],
            ]
        else:
            keyboard = [[Button("🎓 Go to exams", OpenStudentPanel())]]
        await self.outbox.show(
            user_id,
            "👋 Welcome to the exam bot!\n\nChoose where you want to go:",
            keyboard,
            message_id=message_id,
        )

    async def admin(self, user_id: str, message_id: Optional[int] = None) -> None:
        await self.outbox.show(
            user_id,
            "👑 Admin panel\n\nChoose what you want to do:",
            [
                [Button("➕ Add a new exam", StartAddExam())],
                [Button("⬅️ Back to main menu", BackToMain())],
            ],
            message_id=message_id,
        )

    async def student(self, user_id: str, message_id: Optional[int] = None) -> None:
        keyboard: Keyboard = [[Button("📝 Take an exam", ListCategories())]]
        if self.settings.is_operator(user_id):
            keyboard.append([Button("⬅️ Back to main menu", BackToMain())])
        await self.outbox.show(user_id, "🎓 Student panel\n\nWelcome!", keyboard, message_id=message_id)

    async def categories(self, user_id: str, message_id: Optional[int] = None) -> None:
        categories = await self.catalog.list_categories()
        back = [Button("⬅️ Back", OpenStudentPanel())]
        if not categories:
            await self.outbox.show(user_id, "There are no exam categories yet.", [back], message_id=message_id)
            return
        keyboard = [[Button(c.name, ListExamsInCategory(category_name=c.name))] for c in categories]
        keyboard.append(back)
        await self.outbox.show(
            user_id,
            "🗂️ Choose the category of exams you want to see:",
            keyboard,
            message_id=message_id,
        )

    async def exams(self, user_id: str, category_name: str, page: int = 1, message_id: Optional[int] = None) -> None:
        exams = await self.catalog.list_exams(category_name)
        back = [Button("⬅️ Back to categories", ListCategories())]
        if not exams:
            await self.outbox.show(
                user_id,
                f"There are no exams in *{category_name}* yet.",
                [back],
                message_id=message_id,
                markdown=True,
            )
            return

        page_size = self.settings.PAGE_SIZE
        total_pages = math.ceil(len(exams) / page_size)
        page = min(max(page, 1), total_pages)
        shown = exams[(page - 1) * page_size:page * page_size]

        keyboard = [[Button(e.exam_id, ShowExam(exam_id=e.exam_id))] for e in shown]
        nav = []
        if page > 1:
            nav.append(Button("◀️ Previous", ListExamsInCategory(category_name=category_name, page=page - 1)))
        nav.append(Button(f"Page {page}/{total_pages}", Noop()))
        if page < total_pages:
            nav.append(Button("Next ▶️", ListExamsInCategory(category_name=category_name, page=page + 1)))
        keyboard.append(nav)
        keyboard.append(back)
        await self.outbox.show(
            user_id,
            f"📝 Choose an exam from *{category_name}*:",
            keyboard,
            message_id=message_id,
            markdown=True,
        )

    async def exam_confirmation(self, user_id: str, exam_id: str, message_id: Optional[int] = None) -> bool:
        exam = await self.catalog.get_exam(exam_id)
        if exam is None:
            return False
        timing = f"{exam.time_per_question} seconds" if exam.time_per_question > 0 else "♾️ untimed"
        text = (
            f"*Exam: {exam.exam_id}*\n\n"
            f"*Questions:* {exam.question_count}\n"
            f"*Time per question:* {timing}\n\n"
            "Ready to start?"
        )
        await self.outbox.show(
            user_id,
            text,
            [
                [Button("🚀 Start the exam now", ConfirmStartExam(exam_id=exam.exam_id))],
                [Button("⬅️ Back", ListExamsInCategory(category_name=exam.category_name))],
            ],
            message_id=message_id,
            markdown=True,
        )
        return True
