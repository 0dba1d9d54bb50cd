"""
Shop Service — 集計パイプライン

レポートは「絞り込み → 結合 → グループ化 → 整形 → 並べ替え → ページング」
という同じ骨格を持つ。各ステージはドキュメント (dict) の列を受け取り
新しい列を返す関数で、Pipeline がそれを順に合成する。

    Pipeline(
        unwind("products"),
        group("products.product_id", total_sold=sum_of("products.quantity")),
        sort(("total_sold", DESC)),
        take(5),
    ).run(docs)

フィールド指定は "products.quantity" のようなドット区切りのパス、
または doc を受け取る関数のどちらでもよい。
ステージは入力ドキュメントを書き換えない (常にコピーを返す)。
"""

import math
from collections.abc import Callable, Iterable, Iterator
from itertools import islice
from typing import Any

from .errors import InvalidArgument
from .models import Pagination

Doc = dict[str, Any]
Stage = Callable[[Iterable[Doc]], Iterable[Doc]]
Expr = str | Callable[[Doc], Any]

ASC = 1
DESC = -1

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 10


def get_path(doc: Doc, path: str) -> Any:
    value: Any = doc
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _expr(expr: Expr) -> Callable[[Doc], Any]:
    if callable(expr):
        return expr
    return lambda doc: get_path(doc, expr)


class Pipeline:
    def __init__(self, *stages: Stage) -> None:
        self.stages = list(stages)

    def then(self, *stages: Stage) -> "Pipeline":
        return Pipeline(*self.stages, *stages)

    def run(self, docs: Iterable[Doc]) -> list[Doc]:
        result: Iterable[Doc] = docs
        for stage in self.stages:
            result = stage(result)
        return list(result)


# ── ステージ ─────────────────────────────────────


def match(predicate: Callable[[Doc], bool]) -> Stage:
    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        return (doc for doc in docs if predicate(doc))

    return stage


def unwind(field: str) -> Stage:
    """
    配列フィールドを要素ごとの 1 ドキュメントに展開する。
    空配列・欠損のドキュメントは落とす (内部結合の後に使うとマッチしなかった行が消える)。
    """

    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        for doc in docs:
            for element in doc.get(field) or []:
                yield {**doc, field: element}

    return stage


def lookup(foreign: Iterable[Doc], local_field: Expr, foreign_field: str, as_field: str) -> Stage:
    """foreign のうち foreign_field が一致するものをすべて as_field に配列で付ける。"""
    index: dict[Any, list[Doc]] = {}
    for other in foreign:
        index.setdefault(get_path(other, foreign_field), []).append(other)
    local = _expr(local_field)

    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        for doc in docs:
            yield {**doc, as_field: list(index.get(local(doc), []))}

    return stage


def group(key: Expr | None, **accumulators: Callable[[list[Doc]], Any]) -> Stage:
    """
    key ごとにドキュメントをまとめ、{"_id": key, name: 集計値...} を返す。
    グループは最初に現れた順に並ぶ。key=None は全件を 1 グループにする
    (入力が空なら出力も空)。
    """
    key_of = _expr(key) if key is not None else (lambda doc: None)

    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        buckets: dict[Any, list[Doc]] = {}
        for doc in docs:
            buckets.setdefault(key_of(doc), []).append(doc)
        for group_key, members in buckets.items():
            row: Doc = {"_id": group_key}
            for name, accumulate in accumulators.items():
                row[name] = accumulate(members)
            yield row

    return stage


def project(**fields: Expr) -> Stage:
    exprs = {name: _expr(expr) for name, expr in fields.items()}

    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        for doc in docs:
            yield {name: expr(doc) for name, expr in exprs.items()}

    return stage


def sort(*keys: tuple[Expr, int]) -> Stage:
    """
    (フィールド, ASC|DESC) の組を優先順に並べて指定する。
    安定ソートなので、すべてのキーが等しいドキュメントは入力順を保つ。
    """
    for _, direction in keys:
        if direction not in (ASC, DESC):
            raise InvalidArgument(f"Invalid sort direction: {direction}")
    resolved = [(_expr(field), direction) for field, direction in keys]

    def stage(docs: Iterable[Doc]) -> list[Doc]:
        result = list(docs)
        for key_of, direction in reversed(resolved):
            result.sort(key=key_of, reverse=direction == DESC)
        return result

    return stage


def skip(count: int) -> Stage:
    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        return islice(docs, count, None)

    return stage


def take(count: int) -> Stage:
    def stage(docs: Iterable[Doc]) -> Iterator[Doc]:
        return islice(docs, count)

    return stage


# ── アキュムレータ ───────────────────────────────


def sum_of(expr: Expr) -> Callable[[list[Doc]], Any]:
    value = _expr(expr)
    return lambda docs: sum(v for v in map(value, docs) if v is not None)


def avg_of(expr: Expr) -> Callable[[list[Doc]], float | None]:
    value = _expr(expr)

    def accumulate(docs: list[Doc]) -> float | None:
        values = [v for v in map(value, docs) if v is not None]
        if not values:
            return None
        return sum(values) / len(values)

    return accumulate


def max_of(expr: Expr) -> Callable[[list[Doc]], Any]:
    value = _expr(expr)

    def accumulate(docs: list[Doc]) -> Any:
        values = [v for v in map(value, docs) if v is not None]
        return max(values) if values else None

    return accumulate


def first_of(expr: Expr) -> Callable[[list[Doc]], Any]:
    value = _expr(expr)
    return lambda docs: value(docs[0]) if docs else None


def push(expr: Expr) -> Callable[[list[Doc]], list[Any]]:
    value = _expr(expr)
    return lambda docs: [value(doc) for doc in docs]


# ── ページング ───────────────────────────────────


def validate_paging(page: int, limit: int) -> None:
    if limit <= 0:
        raise InvalidArgument(f"limit must be a positive integer: {limit}")
    if page <= 0:
        raise InvalidArgument(f"page must be a positive integer: {page}")


def page_stages(page: int, limit: int) -> list[Stage]:
    return [skip((page - 1) * limit), take(limit)]


def paginate(total: int, page: int, limit: int) -> Pagination:
    return Pagination(
        total=total,
        page=page,
        limit=limit,
        total_pages=math.ceil(total / limit),
    )
