from __future__ import annotations

import json
import logging
import os
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiofiles
from fastapi import APIRouter, Depends, File, UploadFile

from ..auth import Session, session_dependency, tenant_scope_dependency
from ..bot_config import DEFAULT_CATALOG_LABEL, default_config, merge_settings
from ..errors import NotFound, ValidationFailed
from ..runtime import AppRuntime
from ..schemas import BotSettingsUpdate, CourseUpdate, FAQQuestionCreate, KeywordCreate, KnowledgeUpsert, ModuleToggle
from ..tenancy import TenantScope

log = logging.getLogger(__name__)

KNOWN_MODULES = {"ai_evaluation": "module_ai_evaluation"}
LOGO_EXTENSIONS = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg"}
MAX_LOGO_BYTES = 5 * 1024 * 1024


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_list(raw) -> list:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def create_bot_settings_router(rt: AppRuntime) -> APIRouter:
    router = APIRouter(prefix="/api")
    get_scope = tenant_scope_dependency(rt)
    get_session = session_dependency(rt)

    # -------- bot configuration --------
    @router.get("/config")
    async def get_config(scope: TenantScope = Depends(get_scope)):
        settings = await scope.get("SELECT * FROM bot_settings WHERE tenant_id = :tenant_id")
        return merge_settings(settings)

    @router.put("/config")
    async def update_config(payload: BotSettingsUpdate, scope: TenantScope = Depends(get_scope)):
        company = payload.company
        messages = payload.messages
        await scope.run(
            """
            INSERT INTO bot_settings (
                tenant_id, company_name, business_address, company_phone, company_email,
                welcome_message, outside_hours_message, invalid_option_message, transfer_message,
                catalog_label, ai_config, menus, updated_at
            ) VALUES (:tenant_id, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id) DO UPDATE SET
                company_name = EXCLUDED.company_name,
                business_address = EXCLUDED.business_address,
                company_phone = EXCLUDED.company_phone,
                company_email = EXCLUDED.company_email,
                welcome_message = EXCLUDED.welcome_message,
                outside_hours_message = EXCLUDED.outside_hours_message,
                invalid_option_message = EXCLUDED.invalid_option_message,
                transfer_message = EXCLUDED.transfer_message,
                catalog_label = EXCLUDED.catalog_label,
                ai_config = EXCLUDED.ai_config,
                menus = EXCLUDED.menus,
                updated_at = EXCLUDED.updated_at
            """,
            (
                company.name if company else None,
                company.address if company else None,
                company.phone if company else None,
                company.email if company else None,
                messages.welcome if messages else None,
                messages.outside_hours if messages else None,
                messages.invalid_option if messages else None,
                messages.transfer_to_human if messages else None,
                (payload.bot.catalog_label if payload.bot else None) or DEFAULT_CATALOG_LABEL,
                json.dumps(payload.ai) if payload.ai is not None else None,
                json.dumps(payload.menus or []),
                _now_iso(),
            ),
        )
        log.info("bot settings saved tenant=%s", scope.tenant_id)
        return {"success": True, "message": "Configuration saved"}

    # -------- courses --------
    @router.get("/courses")
    async def list_courses(scope: TenantScope = Depends(get_scope)):
        rows = await scope.all("SELECT * FROM bot_courses WHERE tenant_id = :tenant_id AND active = 1 ORDER BY name")
        if not rows:
            return default_config()["courses"]
        return [
            {
                "id": c["id"],
                "name": c["name"],
                "description": c.get("description"),
                "duration": c.get("duration"),
                "workload": c.get("workload"),
                "price": float(c.get("price") or 0),
                "prerequisites": _json_list(c.get("prerequisites")),
                "documents": _json_list(c.get("documents")),
                "active": bool(c.get("active")),
            }
            for c in rows
        ]

    @router.put("/courses/{course_id}")
    async def update_course(course_id: str, payload: CourseUpdate, scope: TenantScope = Depends(get_scope)):
        changed = await scope.run(
            """
            UPDATE bot_courses SET name = ?, description = ?, duration = ?, workload = ?, price = ?, active = ?
            WHERE tenant_id = :tenant_id AND id = ?
            """,
            (
                payload.name,
                payload.description,
                payload.duration,
                payload.workload,
                payload.price,
                1 if payload.active else 0,
                course_id,
            ),
        )
        if not changed:
            raise NotFound("Course not found")
        return {"success": True, "message": "Course updated"}

    # -------- FAQ --------
    @router.get("/faq")
    async def get_faq(scope: TenantScope = Depends(get_scope)):
        categories = await scope.all("SELECT * FROM bot_faq_categories WHERE tenant_id = :tenant_id ORDER BY sort_order")
        if not categories:
            return default_config()["faq"]
        questions = await scope.all("SELECT * FROM bot_faq_questions WHERE tenant_id = :tenant_id ORDER BY sort_order")
        return {
            "categories": [
                {"id": c["id"], "name": c["name"], "icon": c.get("icon"), "order": c.get("sort_order")}
                for c in categories
            ],
            "questions": [
                {
                    "id": q["id"],
                    "categoryId": q["category_id"],
                    "question": q["question"],
                    "answer": q["answer"],
                    "keywords": _json_list(q.get("keywords")),
                    "order": q.get("sort_order"),
                }
                for q in questions
            ],
        }

    @router.post("/faq/questions")
    async def add_faq_question(payload: FAQQuestionCreate, scope: TenantScope = Depends(get_scope)):
        row = await scope.get(
            "SELECT MAX(sort_order) AS max_order FROM bot_faq_questions WHERE tenant_id = :tenant_id AND category_id = ?",
            (payload.category_id,),
        )
        next_order = int((row or {}).get("max_order") or 0) + 1
        question_id = f"q{int(time.time() * 1000)}"
        await scope.run(
            """
            INSERT INTO bot_faq_questions (id, tenant_id, category_id, question, answer, keywords, sort_order)
            VALUES (?, :tenant_id, ?, ?, ?, ?, ?)
            """,
            (
                question_id,
                payload.category_id,
                payload.question,
                payload.answer,
                json.dumps(payload.keywords),
                next_order,
            ),
        )
        return {"success": True, "question": {"id": question_id, "question": payload.question, "answer": payload.answer}}

    # -------- keywords --------
    @router.get("/keywords")
    async def list_keywords(scope: TenantScope = Depends(get_scope)):
        return await scope.all("SELECT * FROM bot_keywords WHERE tenant_id = :tenant_id ORDER BY keyword")

    @router.post("/keywords")
    async def save_keyword(payload: KeywordCreate, scope: TenantScope = Depends(get_scope)):
        await scope.run(
            """
            INSERT INTO bot_keywords (tenant_id, keyword, target_state) VALUES (:tenant_id, ?, ?)
            ON CONFLICT (tenant_id, keyword) DO UPDATE SET target_state = EXCLUDED.target_state
            """,
            (payload.keyword.strip().lower(), payload.target_state),
        )
        return {"success": True}

    @router.delete("/keywords/{keyword}")
    async def delete_keyword(keyword: str, scope: TenantScope = Depends(get_scope)):
        await scope.run(
            "DELETE FROM bot_keywords WHERE tenant_id = :tenant_id AND keyword = ?",
            (keyword.strip().lower(),),
        )
        return {"success": True}

    # -------- knowledge base --------
    @router.get("/knowledge")
    async def list_knowledge(scope: TenantScope = Depends(get_scope)):
        return await scope.all("SELECT * FROM bot_knowledge_base WHERE tenant_id = :tenant_id ORDER BY created_at DESC")

    @router.post("/knowledge")
    async def save_knowledge(payload: KnowledgeUpsert, scope: TenantScope = Depends(get_scope)):
        now = _now_iso()
        knowledge_id = payload.id or f"kb_{int(time.time() * 1000)}"
        existing = await scope.get(
            "SELECT id FROM bot_knowledge_base WHERE tenant_id = :tenant_id AND id = ?",
            (knowledge_id,),
        )
        if existing:
            await scope.run(
                """
                UPDATE bot_knowledge_base SET title = ?, content = ?, category = ?, active = ?, updated_at = ?
                WHERE tenant_id = :tenant_id AND id = ?
                """,
                (payload.title, payload.content, payload.category, 1 if payload.active else 0, now, knowledge_id),
            )
        else:
            # A fresh id is always minted when the supplied one belongs to another tenant.
            taken = await rt.db_manager.get("SELECT 1 AS taken FROM bot_knowledge_base WHERE id = ?", (knowledge_id,))
            if taken:
                knowledge_id = f"kb_{uuid.uuid4().hex[:12]}"
            await scope.run(
                """
                INSERT INTO bot_knowledge_base (id, tenant_id, title, content, category, active, created_at, updated_at)
                VALUES (?, :tenant_id, ?, ?, ?, ?, ?, ?)
                """,
                (knowledge_id, payload.title, payload.content, payload.category, 1 if payload.active else 0, now, now),
            )
        return {"success": True, "id": knowledge_id, "message": "Knowledge entry saved"}

    @router.delete("/knowledge/{knowledge_id}")
    async def delete_knowledge(knowledge_id: str, scope: TenantScope = Depends(get_scope)):
        await scope.run(
            "DELETE FROM bot_knowledge_base WHERE tenant_id = :tenant_id AND id = ?",
            (knowledge_id,),
        )
        return {"success": True, "message": "Knowledge entry removed"}

    # -------- tenant modules --------
    @router.get("/settings/modules")
    async def get_modules(scope: TenantScope = Depends(get_scope)):
        tenant = await scope.get("SELECT module_ai_evaluation FROM tenants WHERE id = :tenant_id")
        return {"success": True, "modules": {"ai_evaluation": bool((tenant or {}).get("module_ai_evaluation"))}}

    @router.post("/settings/modules/toggle")
    async def toggle_module(payload: ModuleToggle, scope: TenantScope = Depends(get_scope)):
        column = KNOWN_MODULES.get(payload.module)
        if column is None:
            raise ValidationFailed("Invalid module")
        await scope.run(
            f"UPDATE tenants SET {column} = ?, updated_at = ? WHERE id = :tenant_id",
            (1 if payload.enabled else 0, _now_iso()),
        )
        log.info("module %s set to %s for tenant=%s", payload.module, payload.enabled, scope.tenant_id)
        return {"success": True, "enabled": payload.enabled}

    # -------- tenant logo --------
    @router.post("/tenants/me/logo")
    async def upload_logo(logo: UploadFile = File(...), session: Session = Depends(get_session)):
        ext = Path(logo.filename or "").suffix.lower()
        if ext not in LOGO_EXTENSIONS:
            raise ValidationFailed("Unsupported logo file type")
        content = await logo.read()
        if not content:
            raise ValidationFailed("No file uploaded")
        if len(content) > MAX_LOGO_BYTES:
            raise ValidationFailed("Logo file is too large")

        os.makedirs(rt.uploads_dir, exist_ok=True)
        filename = f"logo-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}{ext}"
        async with aiofiles.open(os.path.join(rt.uploads_dir, filename), "wb") as out:
            await out.write(content)

        logo_url = f"/uploads/{filename}"
        await TenantScope(rt.db_manager, session.tenant_id).run(
            "UPDATE tenants SET logo_url = ?, updated_at = ? WHERE id = :tenant_id",
            (logo_url, _now_iso()),
        )
        return {"success": True, "logoUrl": logo_url}

    return router
