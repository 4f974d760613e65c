"""
精算書（planilla de movilidad）の承認ワークフロー

状態遷移:
  PENDING --approve--> APPROVED --assign--> APPROVED + 割当先
  PENDING --reject---> REJECTED --edit----> PENDING（承認・割当項目はすべてクリア）

ローカルDBの更新を先にコミットし、その後で会計DBへベストエフォートで反映する。
会計DBの失敗はローカルの状態を巻き戻さず、結果として呼び出し側へ返す。
"""

from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from . import sequence_allocator, state_store
from .accounting_mirror import AccountingMirror
from .errors import NotFoundError, TransitionError, ValidationError
from .models import (
    ApprovalState,
    BucketType,
    BulkActionType,
    BulkResult,
    ExpenseLine,
    ExpenseReport,
    ItemOutcome,
    TransitionResult,
    to_money,
)


DELETABLE_STATES = (ApprovalState.PENDING, ApprovalState.REJECTED)

# edit で PENDING に戻すときにクリアする項目
_RESET_FIELDS = {
    "approval_state": ApprovalState.PENDING,
    "approver_ref": None,
    "approved_at": None,
    "approval_comment": None,
    "bucket_type": BucketType.NONE,
    "bucket_number": None,
    "assigned_at": None,
}


def compute_totals(lines: Iterable[ExpenseLine]) -> Dict[str, Decimal]:
    """明細から合計をサーバ側で計算する（クライアントの合計は信用しない）"""
    total_trip = Decimal("0.00")
    total_day = Decimal("0.00")
    for line in lines:
        total_trip += to_money(line.trip_amount)
        total_day += to_money(line.day_amount)
    return {
        "total_trip": total_trip,
        "total_day": total_day,
        "total_amount": total_trip + total_day,
    }


def _normalize_lines(lines: Iterable) -> List[ExpenseLine]:
    normalized = []
    for line in lines:
        if isinstance(line, dict):
            line = ExpenseLine(**line)
        if to_money(line.trip_amount) < 0 or to_money(line.day_amount) < 0:
            raise ValidationError("明細の金額に負の値は指定できません")
        line.trip_amount = to_money(line.trip_amount)
        line.day_amount = to_money(line.day_amount)
        normalized.append(line)
    return normalized


class ApprovalWorkflow:
    """精算書の作成・承認・却下・修正・割当"""

    def __init__(self, mirror: Optional[AccountingMirror] = None):
        self.mirror = mirror if mirror is not None else AccountingMirror.from_env()

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _load(self, report_id: str) -> ExpenseReport:
        report = state_store.get_report(report_id)
        if report is None:
            raise NotFoundError(f"精算書が見つかりません: {report_id}")
        return report

    def _guard_failed(self, con, report_id: str, message: str):
        """条件付き更新が0件だった場合の原因を判定して送出する"""
        if state_store.get_report(report_id, con=con) is None:
            raise NotFoundError(f"精算書が見つかりません: {report_id}")
        raise TransitionError(message)

    def _propagate(self, operation: str, report: ExpenseReport, actor: str):
        """会計DBへの反映（ベストエフォート）。(saved, error) を返す。"""
        if self.mirror is None:
            return False, "会計DBが設定されていません"
        try:
            if operation == "approve":
                self.mirror.upsert_report(report, username=actor)
            else:
                self.mirror.insert_bucket_document(report, username=actor)
        except Exception as e:
            # 例外の種類によらずこの精算書の結果として記録する
            print(f"⚠️ 会計DBへの反映に失敗しました（ローカルの状態は維持）: {report.report_number}: {e}")
            state_store.write_audit("WARN", actor, f"mirror_{operation}", [report.id], "failed", error=str(e))
            return False, str(e)
        return True, None

    # ------------------------------------------------------------------
    # single-report operations
    # ------------------------------------------------------------------

    def create_report(self, tenant_id: str, user_id: str, header: Dict, lines: Iterable) -> ExpenseReport:
        """番号採番と登録を同一トランザクションで行う（失敗時に欠番を作らない）"""
        if not tenant_id or not user_id:
            raise ValidationError("tenant_id と user_id は必須です")
        items = _normalize_lines(lines)
        if not items:
            raise ValidationError("明細が1件もありません")
        unknown = set(header) - set(state_store.HEADER_FIELDS)
        if unknown:
            raise ValidationError(f"不明なヘッダ項目です: {', '.join(sorted(unknown))}")

        settings = sequence_allocator._settings()
        with state_store.locked_transaction(
            f"sequence {settings['domain_key']}", timeout=float(settings["lock_timeout_seconds"])
        ) as con:
            value = sequence_allocator.next_value(con, settings["domain_key"])
            report_number = sequence_allocator.format_sequence(value)
            report_id = state_store.insert_report(
                con,
                tenant_id=tenant_id,
                user_id=user_id,
                report_number=report_number,
                header=header,
                totals=compute_totals(items),
            )
            state_store.replace_lines(con, report_id, items)
            state_store.write_audit("INFO", user_id, "create_report", [report_id], report_number, con=con)
        print(f"📋 精算書を登録しました: {report_number} ({len(items)}件)")
        return self._load(report_id)

    def approve(self, report_id: str, approver_id: str, comment: Optional[str] = None) -> TransitionResult:
        with state_store.locked_transaction(report_id) as con:
            ok = state_store.update_report_where(
                con,
                report_id,
                {"approval_state": ApprovalState.PENDING},
                {
                    "approval_state": ApprovalState.APPROVED,
                    "approver_ref": approver_id,
                    "approved_at": datetime.utcnow(),
                    "approval_comment": comment,
                },
            )
            if not ok:
                self._guard_failed(con, report_id, f"承認できるのは PENDING の精算書だけです: {report_id}")
            state_store.write_audit("INFO", approver_id, "approve", [report_id], "APPROVED", con=con)

        report = self._load(report_id)
        print(f"✅ 精算書を承認しました: {report.report_number}")
        saved, error = self._propagate("approve", report, approver_id)
        return TransitionResult(report=report, mirror_saved=saved, mirror_error=error)

    def reject(self, report_id: str, approver_id: str, comment: Optional[str] = None) -> TransitionResult:
        with state_store.locked_transaction(report_id) as con:
            ok = state_store.update_report_where(
                con,
                report_id,
                {"approval_state": ApprovalState.PENDING},
                {
                    "approval_state": ApprovalState.REJECTED,
                    "approver_ref": approver_id,
                    "approved_at": datetime.utcnow(),
                    "approval_comment": comment,
                },
            )
            if not ok:
                self._guard_failed(con, report_id, f"却下できるのは PENDING の精算書だけです: {report_id}")
            state_store.write_audit("INFO", approver_id, "reject", [report_id], "REJECTED", con=con)

        report = self._load(report_id)
        print(f"❌ 精算書を却下しました: {report.report_number}")
        return TransitionResult(report=report)

    def edit(self, report_id: str, new_lines: Iterable, header_fields: Optional[Dict] = None,
             privileged: bool = False) -> ExpenseReport:
        """明細とヘッダを差し替え、PENDING に戻す

        REJECTED の精算書のみ。privileged の場合は PENDING も修正できる。
        """
        items = _normalize_lines(new_lines)
        if not items:
            raise ValidationError("明細が1件もありません")
        header_fields = dict(header_fields or {})
        unknown = set(header_fields) - set(state_store.HEADER_FIELDS)
        if unknown:
            raise ValidationError(f"不明なヘッダ項目です: {', '.join(sorted(unknown))}")

        allowed = [ApprovalState.REJECTED]
        if privileged:
            allowed.append(ApprovalState.PENDING)

        with state_store.locked_transaction(report_id) as con:
            current = state_store.get_report(report_id, con=con)
            if current is None:
                raise NotFoundError(f"精算書が見つかりません: {report_id}")
            if current.approval_state not in allowed:
                raise TransitionError(
                    f"{current.approval_state.value} の精算書は修正できません: {current.report_number}"
                )
            values = dict(_RESET_FIELDS)
            values.update(header_fields)
            values.update(compute_totals(items))
            ok = state_store.update_report_where(
                con, report_id, {"approval_state": current.approval_state}, values
            )
            if not ok:
                self._guard_failed(con, report_id, f"精算書が同時に更新されました: {report_id}")
            state_store.replace_lines(con, report_id, items)
            state_store.write_audit("INFO", "system", "edit", [report_id], "PENDING", con=con)

        report = self._load(report_id)
        print(f"🔄 精算書を修正しました（PENDINGに戻しました）: {report.report_number}")
        return report

    def assign_to_bucket(self, report_id: str, bucket_type: BucketType, bucket_number: str,
                         actor_id: str = "system") -> TransitionResult:
        """承認済み・未割当の精算書を rendición / caja chica に割り当てる（1回限り）"""
        bucket_type = BucketType(bucket_type)
        if bucket_type == BucketType.NONE:
            raise ValidationError("割当先の種類を指定してください")
        if not bucket_number:
            raise ValidationError("割当先の番号を指定してください")

        with state_store.locked_transaction(report_id) as con:
            ok = state_store.update_report_where(
                con,
                report_id,
                {"approval_state": ApprovalState.APPROVED, "bucket_number": None},
                {
                    "bucket_type": bucket_type,
                    "bucket_number": str(bucket_number),
                    "assigned_at": datetime.utcnow(),
                },
            )
            if not ok:
                self._guard_failed(
                    con, report_id, f"割当できるのは承認済みかつ未割当の精算書だけです: {report_id}"
                )
            state_store.write_audit(
                "INFO", actor_id, "assign", [report_id], f"{bucket_type.value}#{bucket_number}", con=con
            )

        report = self._load(report_id)
        print(f"📋 {bucket_type.value} #{bucket_number} に割り当てました: {report.report_number}")
        saved, error = self._propagate("assign", report, actor_id)
        return TransitionResult(report=report, mirror_saved=saved, mirror_error=error)

    def delete(self, report_id: str, actor_id: str = "system"):
        with state_store.locked_transaction(report_id) as con:
            if not state_store.delete_report_where(con, report_id, DELETABLE_STATES):
                self._guard_failed(con, report_id, f"承認済みの精算書は削除できません: {report_id}")
            state_store.write_audit("INFO", actor_id, "delete", [report_id], "DELETED", con=con)
        print(f"🗑️ 精算書を削除しました: {report_id}")

    # ------------------------------------------------------------------
    # bulk operations
    # ------------------------------------------------------------------

    def bulk_action(self, tenant_id: str, report_ids: Iterable[str], action: BulkActionType,
                    actor_id: str, comment: Optional[str] = None) -> BulkResult:
        """一括承認・却下・削除

        対象外（他テナント・状態不一致）のIDは黙って除外し、残りを1件ずつ処理する。
        """
        action = BulkActionType(action)
        eligible_states = (ApprovalState.PENDING,) if action != BulkActionType.DELETE else DELETABLE_STATES
        targets = [
            r for r in state_store.list_reports(tenant_id, report_ids)
            if r.approval_state in eligible_states
        ]
        print(f"🔄 一括{action.value}: 対象 {len(targets)} 件")

        result = BulkResult()
        for report in targets:
            try:
                if action == BulkActionType.APPROVE:
                    outcome = self.approve(report.id, actor_id, comment)
                    item = ItemOutcome(report.id, True, outcome.mirror_saved, outcome.mirror_error)
                elif action == BulkActionType.REJECT:
                    self.reject(report.id, actor_id, comment)
                    item = ItemOutcome(report.id, True)
                else:
                    self.delete(report.id, actor_id)
                    item = ItemOutcome(report.id, True)
            except (TransitionError, NotFoundError) as e:
                # 絞り込み後に他の処理が先に状態を変えた
                print(f"⚠️ {report.report_number}: {e}")
                result.errors.append(f"{report.report_number}: {e}")
                result.items.append(ItemOutcome(report.id, False, error=str(e)))
                continue
            result.affected += 1
            if item.mirror_error:
                result.errors.append(f"{report.report_number}: {item.mirror_error}")
            result.items.append(item)

        state_store.write_audit(
            "INFO", actor_id, f"bulk_{action.value.lower()}", [r.id for r in targets], str(result.affected)
        )
        print(f"✅ 一括{action.value}完了: {result.affected}/{len(targets)} 件")
        return result

    def bulk_assign(self, tenant_id: str, report_ids: Iterable[str], bucket_type: BucketType,
                    bucket_number: str, actor_id: str = "system") -> BulkResult:
        """承認済み・未割当の精算書をまとめて割り当てる。会計DBの失敗は1件ごとに記録する。"""
        bucket_type = BucketType(bucket_type)
        if bucket_type == BucketType.NONE or not bucket_number:
            raise ValidationError("割当先の種類と番号を指定してください")
        targets = [
            r for r in state_store.list_reports(tenant_id, report_ids)
            if r.approval_state == ApprovalState.APPROVED and not r.bucket_number
        ]
        print(f"🔄 一括割当 {bucket_type.value} #{bucket_number}: 対象 {len(targets)} 件")

        result = BulkResult()
        for report in targets:
            try:
                outcome = self.assign_to_bucket(report.id, bucket_type, bucket_number, actor_id)
            except (TransitionError, NotFoundError) as e:
                print(f"⚠️ {report.report_number}: {e}")
                result.errors.append(f"{report.report_number}: {e}")
                result.items.append(ItemOutcome(report.id, False, error=str(e)))
                continue
            result.affected += 1
            if outcome.mirror_error:
                result.errors.append(f"{report.report_number}: {outcome.mirror_error}")
            result.items.append(ItemOutcome(report.id, True, outcome.mirror_saved, outcome.mirror_error))

        print(f"✅ 一括割当完了: {result.affected}/{len(targets)} 件")
        return result
