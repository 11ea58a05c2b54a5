import aiosqlite
import os
from datetime import datetime, timedelta
import asyncio
import pathlib
import logging
import json
from contextlib import asynccontextmanager
from typing import Callable, Optional

from src.core.utils import to_iso

logger = logging.getLogger(__name__)

# 这些列在数据库中以 JSON 字符串保存，读取时自动解码
JSON_COLUMNS = ('options', 'template', 'evidence', 'participants', 'tickets', 'tier_counts', 'event_ids')

TIER_COLUMNS = {'Bronze': 'bronze', 'Silver': 'silver', 'Gold': 'gold'}


def _row_to_dict(row) -> dict:
    data = dict(row)
    for column in JSON_COLUMNS:
        if column in data and isinstance(data[column], str):
            data[column] = json.loads(data[column])
    return data


class Transaction:
    """
    事务内使用的游标包装。
    只能在 Database.transaction() 内部使用，此时连接锁已被持有。
    """

    def __init__(self, conn: aiosqlite.Connection):
        self.conn = conn

    async def execute(self, query, args=None) -> int:
        async with self.conn.cursor() as cursor:
            await cursor.execute(query, args or ())
            return cursor.rowcount

    async def fetchone(self, query, args=None) -> Optional[dict]:
        async with self.conn.cursor() as cursor:
            await cursor.execute(query, args or ())
            row = await cursor.fetchone()
            return _row_to_dict(row) if row else None

    async def fetchall(self, query, args=None) -> list[dict]:
        async with self.conn.cursor() as cursor:
            await cursor.execute(query, args or ())
            rows = await cursor.fetchall()
            return [_row_to_dict(row) for row in rows] if rows else []


class Database:
    def __init__(self, db_name: Optional[str] = None):
        # SQLite 不需要连接池，只需要一个连接对象
        self.conn: Optional[aiosqlite.Connection] = None
        self.db_name = db_name or os.getenv('DB_NAME', 'tasks.db')
        self.backup_folder = os.getenv('BACKUP_FOLDER', 'backups')
        try:
            self.backup_retention_days = int(os.getenv('BACKUP_RETENTION_DAYS', '7'))
        except (ValueError, TypeError):
            self.backup_retention_days = 7
        # 所有协程共用一个连接，读-判断-写 必须在锁内完成，避免在挂起点交错
        self._lock = asyncio.Lock()

    async def connect(self):
        """连接到SQLite数据库文件"""
        # isolation_level=None: 自动提交模式，事务由 transaction() 显式控制
        self.conn = await aiosqlite.connect(self.db_name, isolation_level=None)
        # 让查询结果可以像字典一样通过列名访问
        self.conn.row_factory = aiosqlite.Row
        await self.conn.execute("PRAGMA foreign_keys = ON")
        await self._run_migrations()
        logger.info("数据库连接成功并完成初始化", extra={'db_name': self.db_name})

    async def close(self):
        if self.conn:
            await self.conn.close()
            self.conn = None

    async def cleanup_old_backups(self):
        """清理超过指定保留天数的旧备份文件。"""
        if self.backup_retention_days <= 0:
            logger.info("备份清理功能已禁用", extra={'retention_days': self.backup_retention_days})
            return

        backup_dir = pathlib.Path(self.backup_folder)
        if not backup_dir.is_dir():
            return

        logger.info("开始清理旧备份", extra={'retention_days': self.backup_retention_days})
        cutoff_date = datetime.now() - timedelta(days=self.backup_retention_days)
        cleaned_count = 0

        for file_path in backup_dir.glob('*_backup_*.db'):
            try:
                timestamp_str = file_path.stem.split('_backup_')[-1]
                file_date = datetime.strptime(timestamp_str, "%Y%m%d_%H%M%S")

                if file_date < cutoff_date:
                    file_path.unlink()
                    logger.info("已删除旧备份文件", extra={'file_name': file_path.name})
                    cleaned_count += 1
            except (ValueError, IndexError):
                logger.warning("无法解析或处理备份文件", extra={'file_name': file_path.name}, exc_info=True)

        logger.info("备份清理完成", extra={'cleaned_count': cleaned_count})

    async def backup_database(self):
        """使用SQLite的在线备份API创建一个安全的数据库备份文件。"""
        await self.cleanup_old_backups()

        backup_dir = pathlib.Path(self.backup_folder)
        backup_dir.mkdir(exist_ok=True)

        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        db_stem = pathlib.Path(self.db_name).stem
        backup_path = backup_dir / f"{db_stem}_backup_{timestamp}.db"

        log_context = {'backup_path': str(backup_path)}
        logger.info("正在开始备份数据库", extra=log_context)
        try:
            async with self._lock:
                async with aiosqlite.connect(backup_path) as backup_conn:
                    await self.conn.backup(backup_conn)
            logger.info("数据库备份成功", extra=log_context)
        except Exception:
            logger.error("数据库备份失败", extra=log_context, exc_info=True)

    async def start_backup_loop(self, interval_seconds: int):
        """启动一个循环，按指定间隔备份数据库。"""
        logger.info("数据库自动备份循环已启动。")
        while True:
            await asyncio.sleep(interval_seconds)
            await self.backup_database()

    @asynccontextmanager
    async def transaction(self):
        """BEGIN IMMEDIATE 开始，正常退出时 COMMIT，异常时 ROLLBACK。期间独占连接。"""
        async with self._lock:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(self.conn)
            except BaseException:
                await self.conn.execute("ROLLBACK")
                raise
            else:
                await self.conn.execute("COMMIT")

    async def _execute(self, query, args=None, fetch=None):
        """通用的执行函数"""
        async with self._lock:
            async with self.conn.cursor() as cursor:
                await cursor.execute(query, args or ())
                if fetch == 'one':
                    row = await cursor.fetchone()
                    return _row_to_dict(row) if row else None
                if fetch == 'all':
                    rows = await cursor.fetchall()
                    return [_row_to_dict(row) for row in rows] if rows else []
                return cursor.rowcount

    # --- Task Template Methods ---

    async def upsert_task_template(self, guild_id: int, template: dict):
        """新增或覆盖一个任务模板。权重不会被覆盖，以保留用户反馈的累积结果。"""
        sql = """
            INSERT INTO task_templates
                (guild_id, template_id, name, short_name, category, task_type, skill,
                 amt_bronze, amt_silver, amt_gold, weight)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, template_id) DO UPDATE SET
                name = excluded.name,
                short_name = excluded.short_name,
                category = excluded.category,
                task_type = excluded.task_type,
                skill = excluded.skill,
                amt_bronze = excluded.amt_bronze,
                amt_silver = excluded.amt_silver,
                amt_gold = excluded.amt_gold;
        """
        await self._execute(sql, (
            guild_id, template['template_id'], template['name'], template.get('short_name'),
            template['category'], template.get('task_type', 'Other'), template.get('skill'),
            template.get('amt_bronze', 0), template.get('amt_silver', 0), template.get('amt_gold', 0),
            template.get('weight', 50),
        ))

    async def get_task_template(self, guild_id: int, template_id: str) -> Optional[dict]:
        sql = "SELECT * FROM task_templates WHERE guild_id = ? AND template_id = ?"
        return await self._execute(sql, (guild_id, template_id), fetch='one')

    async def get_task_templates(self, guild_id: int, category: Optional[str] = None) -> list[dict]:
        """获取任务目录，可按分类过滤。"""
        if category:
            sql = "SELECT * FROM task_templates WHERE guild_id = ? AND category = ? ORDER BY template_id"
            return await self._execute(sql, (guild_id, category), fetch='all')
        sql = "SELECT * FROM task_templates WHERE guild_id = ? ORDER BY template_id"
        return await self._execute(sql, (guild_id,), fetch='all')

    # --- Task Poll Methods ---

    async def create_task_poll(self, guild_id: int, poll: dict) -> Optional[str]:
        """
        创建新的投票。
        如果该分类已有进行中的投票，则不创建，返回已有投票的 poll_id。
        """
        async with self.transaction() as tx:
            existing = await tx.fetchone(
                "SELECT poll_id FROM task_polls WHERE guild_id = ? AND category = ? AND is_active = 1",
                (guild_id, poll['category'])
            )
            if existing:
                return existing['poll_id']
            await tx.execute(
                """
                INSERT INTO task_polls (guild_id, poll_id, category, options, created_at, ends_at, is_active)
                VALUES (?, ?, ?, ?, ?, ?, 1)
                """,
                (guild_id, poll['poll_id'], poll['category'], json.dumps(poll['options']),
                 to_iso(poll['created_at']), to_iso(poll.get('ends_at')))
            )
            return None

    async def get_task_poll(self, guild_id: int, poll_id: str) -> Optional[dict]:
        """获取投票及其全部投票记录 (votes: user_id -> option_id)。"""
        poll = await self._execute(
            "SELECT * FROM task_polls WHERE guild_id = ? AND poll_id = ?", (guild_id, poll_id), fetch='one'
        )
        if not poll:
            return None
        poll['votes'] = await self.get_task_poll_votes(guild_id, poll_id)
        return poll

    async def get_active_task_poll(self, guild_id: int, category: str) -> Optional[dict]:
        sql = "SELECT poll_id FROM task_polls WHERE guild_id = ? AND category = ? AND is_active = 1"
        result = await self._execute(sql, (guild_id, category), fetch='one')
        if not result:
            return None
        return await self.get_task_poll(guild_id, result['poll_id'])

    async def get_latest_closed_task_poll(self, guild_id: int, category: str) -> Optional[dict]:
        sql = """
            SELECT poll_id FROM task_polls
            WHERE guild_id = ? AND category = ? AND is_active = 0
            ORDER BY closed_at DESC, created_at DESC
            LIMIT 1
        """
        result = await self._execute(sql, (guild_id, category), fetch='one')
        if not result:
            return None
        return await self.get_task_poll(guild_id, result['poll_id'])

    async def get_task_poll_votes(self, guild_id: int, poll_id: str) -> dict[int, str]:
        sql = "SELECT user_id, option_id FROM task_poll_votes WHERE guild_id = ? AND poll_id = ?"
        results = await self._execute(sql, (guild_id, poll_id), fetch='all')
        return {row['user_id']: row['option_id'] for row in results}

    async def update_task_poll_message(self, guild_id: int, poll_id: str, channel_id: int, message_id: int):
        sql = "UPDATE task_polls SET channel_id = ?, message_id = ? WHERE guild_id = ? AND poll_id = ?"
        await self._execute(sql, (channel_id, message_id, guild_id, poll_id))

    async def record_task_poll_vote(self, guild_id: int, poll_id: str, user_id: int, option_id: str, voted_at: datetime) -> dict:
        """
        原子地记录一票：读取旧票、写入新票、首次投票时累加用户统计，全部在同一事务中完成。
        返回 {'found', 'is_active', 'previous'}；previous 为用户之前投的选项 (没有则为 None)。
        """
        async with self.transaction() as tx:
            poll = await tx.fetchone(
                "SELECT is_active FROM task_polls WHERE guild_id = ? AND poll_id = ?", (guild_id, poll_id)
            )
            if not poll:
                return {'found': False, 'is_active': False, 'previous': None}
            if not poll['is_active']:
                return {'found': True, 'is_active': False, 'previous': None}

            existing = await tx.fetchone(
                "SELECT option_id FROM task_poll_votes WHERE guild_id = ? AND poll_id = ? AND user_id = ?",
                (guild_id, poll_id, user_id)
            )
            previous = existing['option_id'] if existing else None
            if previous == option_id:
                return {'found': True, 'is_active': True, 'previous': previous}

            await tx.execute(
                """
                INSERT INTO task_poll_votes (guild_id, poll_id, user_id, option_id, voted_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, poll_id, user_id) DO UPDATE SET
                    option_id = excluded.option_id,
                    voted_at = excluded.voted_at;
                """,
                (guild_id, poll_id, user_id, option_id, to_iso(voted_at))
            )
            if previous is None:
                await self._increment_user_stat(tx, guild_id, user_id, 'task_polls_voted', 1)
            return {'found': True, 'is_active': True, 'previous': previous}

    async def close_task_poll(
        self,
        guild_id: int,
        poll_id: str,
        closed_at: datetime,
        choose_winner: Callable[[list[dict], dict[str, int]], Optional[str]],
    ) -> Optional[dict]:
        """
        关闭投票并写入获胜选项。读取票数与写入结果在同一事务中，期间到达的投票不会丢失或重复计算。
        已关闭的投票直接返回，不会重新选出获胜者。
        """
        async with self.transaction() as tx:
            poll = await tx.fetchone(
                "SELECT * FROM task_polls WHERE guild_id = ? AND poll_id = ?", (guild_id, poll_id)
            )
            if not poll:
                return None
            if poll['is_active']:
                rows = await tx.fetchall(
                    """
                    SELECT option_id, COUNT(*) AS votes FROM task_poll_votes
                    WHERE guild_id = ? AND poll_id = ? GROUP BY option_id
                    """,
                    (guild_id, poll_id)
                )
                tallies = {row['option_id']: row['votes'] for row in rows}
                winner = choose_winner(poll['options'], tallies)
                await tx.execute(
                    """
                    UPDATE task_polls SET is_active = 0, closed_at = ?, winning_option_id = ?
                    WHERE guild_id = ? AND poll_id = ?
                    """,
                    (to_iso(closed_at), winner, guild_id, poll_id)
                )
        return await self.get_task_poll(guild_id, poll_id)

    # --- Task Event Methods ---

    async def create_task_event(self, guild_id: int, event: dict) -> dict:
        """创建任务活动。同一个投票只会产生一个活动，重复调用返回已有的活动。"""
        sql = """
            INSERT OR IGNORE INTO task_events
                (guild_id, event_id, category, poll_id, template, keyword, start_time, end_time,
                 amt_bronze, amt_silver, amt_gold)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        await self._execute(sql, (
            guild_id, event['event_id'], event['category'], event.get('poll_id'),
            json.dumps(event['template']), event['keyword'],
            to_iso(event['start_time']), to_iso(event['end_time']),
            event['amt_bronze'], event['amt_silver'], event['amt_gold'],
        ))
        if event.get('poll_id'):
            return await self.get_task_event_by_poll(guild_id, event['poll_id'])
        return await self.get_task_event(guild_id, event['event_id'])

    async def get_task_event(self, guild_id: int, event_id: str) -> Optional[dict]:
        sql = "SELECT * FROM task_events WHERE guild_id = ? AND event_id = ?"
        return await self._execute(sql, (guild_id, event_id), fetch='one')

    async def get_task_event_by_poll(self, guild_id: int, poll_id: str) -> Optional[dict]:
        sql = "SELECT * FROM task_events WHERE guild_id = ? AND poll_id = ?"
        return await self._execute(sql, (guild_id, poll_id), fetch='one')

    async def get_task_events_between(self, guild_id: int, start: datetime, end: datetime) -> list[dict]:
        """获取开始时间落在 [start, end] 内的所有活动。"""
        sql = """
            SELECT * FROM task_events
            WHERE guild_id = ? AND start_time >= ? AND start_time <= ?
            ORDER BY start_time, event_id
        """
        return await self._execute(sql, (guild_id, to_iso(start), to_iso(end)), fetch='all')

    async def get_active_task_events(self, guild_id: int, now: datetime) -> list[dict]:
        sql = "SELECT * FROM task_events WHERE guild_id = ? AND end_time > ? ORDER BY start_time"
        return await self._execute(sql, (guild_id, to_iso(now)), fetch='all')

    async def get_latest_task_event(self, guild_id: int, category: str) -> Optional[dict]:
        sql = """
            SELECT * FROM task_events WHERE guild_id = ? AND category = ?
            ORDER BY start_time DESC LIMIT 1
        """
        return await self._execute(sql, (guild_id, category), fetch='one')

    async def get_event_completed_user_ids(self, guild_id: int, event_id: str) -> set[int]:
        sql = "SELECT user_id FROM task_event_completions WHERE guild_id = ? AND event_id = ?"
        results = await self._execute(sql, (guild_id, event_id), fetch='all')
        return {row['user_id'] for row in results}

    async def update_task_event_message(self, guild_id: int, event_id: str, channel_id: int, message_id: int):
        sql = "UPDATE task_events SET channel_id = ?, message_id = ? WHERE guild_id = ? AND event_id = ?"
        await self._execute(sql, (channel_id, message_id, guild_id, event_id))

    # --- Task Submission Methods ---

    async def create_task_submission(self, guild_id: int, submission: dict):
        sql = """
            INSERT INTO task_submissions
                (guild_id, submission_id, user_id, event_id, evidence, notes, status, task_name, created_at)
            VALUES (?, ?, ?, ?, ?, ?, 'Pending', ?, ?)
        """
        await self._execute(sql, (
            guild_id, submission['submission_id'], submission['user_id'], submission['event_id'],
            json.dumps(submission['evidence']), submission.get('notes'), submission.get('task_name'),
            to_iso(submission['created_at']),
        ))

    async def get_task_submission(self, guild_id: int, submission_id: str) -> Optional[dict]:
        sql = "SELECT * FROM task_submissions WHERE guild_id = ? AND submission_id = ?"
        return await self._execute(sql, (guild_id, submission_id), fetch='one')

    async def get_submissions_for_event(self, guild_id: int, event_id: str, statuses: Optional[list[str]] = None) -> list[dict]:
        """获取某个活动的提交，可按状态过滤。"""
        if statuses:
            placeholders = ','.join('?' for _ in statuses)
            sql = f"""
                SELECT * FROM task_submissions
                WHERE guild_id = ? AND event_id = ? AND status IN ({placeholders})
                ORDER BY created_at
            """
            return await self._execute(sql, (guild_id, event_id) + tuple(statuses), fetch='all')
        sql = "SELECT * FROM task_submissions WHERE guild_id = ? AND event_id = ? ORDER BY created_at"
        return await self._execute(sql, (guild_id, event_id), fetch='all')

    async def get_pending_submissions(self, guild_id: int) -> list[dict]:
        sql = "SELECT * FROM task_submissions WHERE guild_id = ? AND status = 'Pending' ORDER BY created_at"
        return await self._execute(sql, (guild_id,), fetch='all')

    async def update_submission_review_message(self, guild_id: int, submission_id: str, channel_id: Optional[int], message_id: Optional[int]):
        sql = """
            UPDATE task_submissions SET review_channel_id = ?, review_message_id = ?
            WHERE guild_id = ? AND submission_id = ?
        """
        await self._execute(sql, (channel_id, message_id, guild_id, submission_id))

    async def apply_submission_approval(
        self,
        guild_id: int,
        submission_id: str,
        tier: str,
        prize_rolls: int,
        reviewer_id: int,
        reviewed_at: datetime,
    ) -> dict:
        """
        批准一个提交并更新活动计数，全部在同一事务中完成：
        先减去用户在该活动中之前的最高等级，再加上新的等级，避免铜升金时重复计数。
        返回 {'outcome': 'not_found' | 'already_reviewed' | 'not_upgrade' | 'approved', 'previous_tier': ...}
        """
        async with self.transaction() as tx:
            submission = await tx.fetchone(
                "SELECT * FROM task_submissions WHERE guild_id = ? AND submission_id = ?", (guild_id, submission_id)
            )
            if not submission:
                return {'outcome': 'not_found', 'previous_tier': None}
            if submission['status'] != 'Pending':
                return {'outcome': 'already_reviewed', 'previous_tier': None}

            event_id, user_id = submission['event_id'], submission['user_id']
            previous = await tx.fetchone(
                """
                SELECT tier, prize_rolls FROM task_event_completions
                WHERE guild_id = ? AND event_id = ? AND user_id = ?
                """,
                (guild_id, event_id, user_id)
            )
            previous_tier = previous['tier'] if previous else None
            if previous and previous['prize_rolls'] >= prize_rolls:
                return {'outcome': 'not_upgrade', 'previous_tier': previous_tier}

            updated = await tx.execute(
                """
                UPDATE task_submissions
                SET status = ?, prize_rolls = ?, reviewed_by = ?, reviewed_at = ?
                WHERE guild_id = ? AND submission_id = ? AND status = 'Pending'
                """,
                (tier, prize_rolls, reviewer_id, to_iso(reviewed_at), guild_id, submission_id)
            )
            if updated == 0:
                return {'outcome': 'already_reviewed', 'previous_tier': None}

            await tx.execute(
                """
                INSERT INTO task_event_completions
                    (guild_id, event_id, user_id, tier, prize_rolls, submission_id, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, event_id, user_id) DO UPDATE SET
                    tier = excluded.tier,
                    prize_rolls = excluded.prize_rolls,
                    submission_id = excluded.submission_id,
                    updated_at = excluded.updated_at;
                """,
                (guild_id, event_id, user_id, tier, prize_rolls, submission_id, to_iso(reviewed_at))
            )

            new_column = TIER_COLUMNS[tier]
            if previous_tier:
                old_column = TIER_COLUMNS[previous_tier]
                await tx.execute(
                    f"""
                    UPDATE task_events
                    SET count_{old_column} = count_{old_column} - 1, count_{new_column} = count_{new_column} + 1
                    WHERE guild_id = ? AND event_id = ?
                    """,
                    (guild_id, event_id)
                )
                await self._increment_user_stat(tx, guild_id, user_id, f'tasks_completed_{old_column}', -1)
            else:
                await tx.execute(
                    f"UPDATE task_events SET count_{new_column} = count_{new_column} + 1 WHERE guild_id = ? AND event_id = ?",
                    (guild_id, event_id)
                )
            await self._increment_user_stat(tx, guild_id, user_id, f'tasks_completed_{new_column}', 1)
            return {'outcome': 'approved', 'previous_tier': previous_tier}

    async def apply_submission_rejection(
        self, guild_id: int, submission_id: str, reviewer_id: int, reviewed_at: datetime, reason: Optional[str]
    ) -> bool:
        """驳回一个待审核的提交。返回 False 表示该提交已经被处理过。"""
        sql = """
            UPDATE task_submissions
            SET status = 'Rejected', reviewed_by = ?, reviewed_at = ?, rejection_reason = ?
            WHERE guild_id = ? AND submission_id = ? AND status = 'Pending'
        """
        rows_affected = await self._execute(sql, (reviewer_id, to_iso(reviewed_at), reason, guild_id, submission_id))
        return rows_affected > 0

    # --- Task Feedback Methods ---

    async def apply_task_feedback(
        self,
        guild_id: int,
        feedback_id: str,
        template_id: str,
        event_id: Optional[str],
        user_id: int,
        direction: str,
        first_delta: int,
        switch_delta: int,
        min_weight: int,
        max_weight: int,
    ) -> dict:
        """
        记录用户对任务的反馈，并以原子增量调整任务权重。
        首次反馈应用 first_delta；改变方向时应用 switch_delta (撤销旧的 + 应用新的)。
        返回 {'found', 'previous', 'weight'}。
        """
        async with self.transaction() as tx:
            template = await tx.fetchone(
                "SELECT weight FROM task_templates WHERE guild_id = ? AND template_id = ?", (guild_id, template_id)
            )
            if not template:
                return {'found': False, 'previous': None, 'weight': None}

            existing = await tx.fetchone(
                "SELECT direction FROM task_feedback WHERE guild_id = ? AND user_id = ? AND template_id = ?",
                (guild_id, user_id, template_id)
            )
            previous = existing['direction'] if existing else None
            if previous == direction:
                return {'found': True, 'previous': previous, 'weight': template['weight']}

            delta = first_delta if previous is None else switch_delta
            await tx.execute(
                """
                UPDATE task_templates SET weight = MAX(?, MIN(?, weight + ?))
                WHERE guild_id = ? AND template_id = ?
                """,
                (min_weight, max_weight, delta, guild_id, template_id)
            )
            await tx.execute(
                """
                INSERT INTO task_feedback (guild_id, feedback_id, template_id, event_id, user_id, direction)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, user_id, template_id) DO UPDATE SET
                    direction = excluded.direction,
                    event_id = excluded.event_id;
                """,
                (guild_id, feedback_id, template_id, event_id, user_id, direction)
            )
            updated = await tx.fetchone(
                "SELECT weight FROM task_templates WHERE guild_id = ? AND template_id = ?", (guild_id, template_id)
            )
            return {'found': True, 'previous': previous, 'weight': updated['weight']}

    async def get_task_feedback(self, guild_id: int, template_id: str) -> list[dict]:
        sql = "SELECT * FROM task_feedback WHERE guild_id = ? AND template_id = ?"
        return await self._execute(sql, (guild_id, template_id), fetch='all')

    # --- Prize Draw Methods ---

    async def save_prize_draw_snapshot(self, guild_id: int, draw: dict) -> dict:
        """
        保存抽奖快照。尚未抽出获奖者的快照可以被覆盖；已有获奖者的快照保持不变。
        返回数据库中最终的快照。
        """
        async with self.transaction() as tx:
            await tx.execute(
                """
                INSERT INTO prize_draws
                    (guild_id, draw_id, window_start, window_end, snapshot_taken_at, participants,
                     tickets, total_entries, tier_counts, event_ids)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(guild_id, draw_id) DO UPDATE SET
                    window_start = excluded.window_start,
                    window_end = excluded.window_end,
                    snapshot_taken_at = excluded.snapshot_taken_at,
                    participants = excluded.participants,
                    tickets = excluded.tickets,
                    total_entries = excluded.total_entries,
                    tier_counts = excluded.tier_counts,
                    event_ids = excluded.event_ids
                WHERE prize_draws.winner_id IS NULL;
                """,
                (guild_id, draw['draw_id'], to_iso(draw['window_start']), to_iso(draw['window_end']),
                 to_iso(draw['snapshot_taken_at']), json.dumps({str(k): v for k, v in draw['participants'].items()}),
                 json.dumps(draw['tickets']), draw['total_entries'], json.dumps(draw['tier_counts']),
                 json.dumps(draw['event_ids']))
            )
            return await tx.fetchone(
                "SELECT * FROM prize_draws WHERE guild_id = ? AND draw_id = ?", (guild_id, draw['draw_id'])
            )

    async def get_prize_draw(self, guild_id: int, draw_id: str) -> Optional[dict]:
        sql = "SELECT * FROM prize_draws WHERE guild_id = ? AND draw_id = ?"
        return await self._execute(sql, (guild_id, draw_id), fetch='one')

    async def get_all_prize_draws(self, guild_id: int) -> list[dict]:
        sql = "SELECT * FROM prize_draws WHERE guild_id = ? ORDER BY window_start DESC"
        return await self._execute(sql, (guild_id,), fetch='all')

    async def set_prize_draw_winner(self, guild_id: int, draw_id: str, winner_id: int, rolled_at: datetime) -> Optional[int]:
        """
        写入获奖者（仅当尚无获奖者时），并且只在真正写入时累加一次获奖统计。
        返回数据库中的获奖者 ID。
        """
        async with self.transaction() as tx:
            updated = await tx.execute(
                """
                UPDATE prize_draws SET winner_id = ?, rolled_at = ?
                WHERE guild_id = ? AND draw_id = ? AND winner_id IS NULL
                """,
                (winner_id, to_iso(rolled_at), guild_id, draw_id)
            )
            if updated:
                await self._increment_user_stat(tx, guild_id, winner_id, 'task_prizes_won', 1)
            row = await tx.fetchone(
                "SELECT winner_id FROM prize_draws WHERE guild_id = ? AND draw_id = ?", (guild_id, draw_id)
            )
            return row['winner_id'] if row else None

    async def mark_prize_draw_announced(self, guild_id: int, draw_id: str, announced_at: Optional[datetime]) -> bool:
        """announced_at 为 None 时撤销标记。标记时仅当尚未公告才成功。"""
        if announced_at is None:
            sql = "UPDATE prize_draws SET announced_at = NULL WHERE guild_id = ? AND draw_id = ?"
            return await self._execute(sql, (guild_id, draw_id)) > 0
        sql = """
            UPDATE prize_draws SET announced_at = ?
            WHERE guild_id = ? AND draw_id = ? AND announced_at IS NULL
        """
        return await self._execute(sql, (to_iso(announced_at), guild_id, draw_id)) > 0

    # --- Keyword Methods ---

    async def add_task_keyword(self, guild_id: int, word: str) -> bool:
        sql = "INSERT OR IGNORE INTO task_keywords (guild_id, word) VALUES (?, ?)"
        return await self._execute(sql, (guild_id, word)) > 0

    async def get_task_keywords(self, guild_id: int) -> list[dict]:
        sql = "SELECT * FROM task_keywords WHERE guild_id = ? ORDER BY word"
        return await self._execute(sql, (guild_id,), fetch='all')

    async def mark_task_keyword_used(self, guild_id: int, word: str, used_at: datetime, event_id: Optional[str] = None):
        sql = """
            UPDATE task_keywords
            SET times_used = times_used + 1, last_used_at = ?, last_used_event_id = ?
            WHERE guild_id = ? AND word = ?
        """
        await self._execute(sql, (to_iso(used_at), event_id, guild_id, word))

    # --- User Stats Methods ---

    async def _increment_user_stat(self, tx: Transaction, guild_id: int, user_id: int, column: str, amount: int):
        """在事务内对用户统计做原子增量。column 只能是内部固定的列名。"""
        await tx.execute(
            f"""
            INSERT INTO task_user_stats (guild_id, user_id, {column}) VALUES (?, ?, ?)
            ON CONFLICT(guild_id, user_id) DO UPDATE SET {column} = {column} + excluded.{column};
            """,
            (guild_id, user_id, amount)
        )

    async def get_task_user_stats(self, guild_id: int, user_id: int) -> Optional[dict]:
        sql = "SELECT * FROM task_user_stats WHERE guild_id = ? AND user_id = ?"
        return await self._execute(sql, (guild_id, user_id), fetch='one')

    # --- Scheduler Trigger Methods ---

    async def get_trigger_states(self, guild_id: int) -> list[dict]:
        sql = "SELECT * FROM task_trigger_state WHERE guild_id = ?"
        return await self._execute(sql, (guild_id,), fetch='all')

    async def save_trigger_state(
        self, guild_id: int, category: str, trigger_name: str,
        last_fired_at: Optional[datetime], next_fire_at: Optional[datetime]
    ):
        sql = """
            INSERT INTO task_trigger_state (guild_id, category, trigger_name, last_fired_at, next_fire_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(guild_id, category, trigger_name) DO UPDATE SET
                last_fired_at = excluded.last_fired_at,
                next_fire_at = excluded.next_fire_at;
        """
        await self._execute(sql, (guild_id, category, trigger_name, to_iso(last_fired_at), to_iso(next_fire_at)))

    async def _run_migrations(self):
        """
        执行基于版本的数据库迁移。
        此方法会检查 `src/migrations/versions` 目录下的 .sql 文件，
        并与数据库中存储的 `user_version` 进行比较，然后按顺序应用所有新的迁移。
        """
        logger.info("正在检查并运行数据库迁移...")

        migrations_path = pathlib.Path(__file__).parent.parent / "migrations" / "versions"
        if not migrations_path.is_dir():
            logger.warning(f"迁移目录不存在，跳过迁移: {migrations_path}")
            return

        async with self.conn.cursor() as cursor:
            await cursor.execute("PRAGMA user_version")
            current_version = (await cursor.fetchone())[0]
        logger.info(f"当前数据库版本: {current_version}")

        try:
            migration_files = sorted(
                migrations_path.glob("*.sql"),
                key=lambda p: int(p.stem.split('_')[0])
            )
        except (ValueError, IndexError):
            logger.error("迁移文件名格式不正确，应为 'XXX_description.sql'。")
            raise

        latest_version = current_version
        for migration_file in migration_files:
            file_version = int(migration_file.stem.split('_')[0])
            if file_version <= current_version:
                continue
            try:
                logger.info(f"准备应用迁移脚本: v{file_version} - {migration_file.name}")
                sql_script = migration_file.read_text(encoding='utf-8')
                await self.conn.executescript(sql_script)
                await self.conn.execute(f"PRAGMA user_version = {file_version}")
                logger.info(f"成功应用迁移脚本并更新数据库版本至: {file_version}")
                latest_version = file_version
            except Exception:
                logger.error(f"应用迁移脚本失败: {migration_file.name}", exc_info=True)
                raise  # 防止机器人以损坏的数据库状态启动

        if latest_version == current_version:
            logger.info("数据库结构已是最新，无需迁移。")
        else:
            logger.info(f"数据库迁移完成，当前版本: {latest_version}")
