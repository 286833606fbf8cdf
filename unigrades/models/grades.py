"""Pydantic models for scraped grade data and its tracked projection."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Grade(CamelModel):
    """One row of the student's transcript as rendered by the portal."""

    semester: str = ""
    code: str = ""
    title: str = ""
    grade: str = ""
    year: str = ""
    session: str = ""
    ects: str = ""
    status: str = "Enrolled"
    category: str = ""
    acad_session: str = ""
    appr_status: str = ""
    bkg_status: str = ""
    gravity: str = ""


class StudentInfo(CamelModel):
    name: str = ""
    average: str = ""
    total_credits: str = ""
    total_greek_credits: str = ""


class ScrapeResult(CamelModel):
    """Output of the black-box page scraper."""

    grades: list[Grade] = Field(default_factory=list)
    student_info: StudentInfo = Field(default_factory=StudentInfo)
    headers: list[str] = Field(default_factory=list)


class TrackedGrade(CamelModel):
    """Reduced, normalized grade projection used for change detection."""

    code: str = ""
    year: str = ""
    semester: str = ""
    session: str = ""
    grade: str = ""
    title: str = ""

    @property
    def identity_key(self) -> str:
        """Stable key of one course occurrence, independent of its grade value."""
        return "::".join([self.code, self.year, self.semester, self.session])

    def notification_key(self) -> str:
        return f"{self.identity_key}::{self.grade}"

    @classmethod
    def from_grade(cls, grade: Grade) -> TrackedGrade:
        def norm(value: str) -> str:
            return " ".join((value or "").split())

        return cls(
            code=norm(grade.code),
            year=norm(grade.year),
            semester=norm(grade.semester),
            session=norm(grade.session or grade.acad_session),
            grade=norm(grade.grade).replace(",", "."),
            title=norm(grade.title),
        )
