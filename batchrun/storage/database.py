from sqlalchemy import create_engine, Column, String, Integer, DateTime, Text, ForeignKey, Enum as SQLEnum
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
import os
from datetime import datetime, timezone
from uuid import uuid4
from ..models.job import BatchRunError, JobState
from ..models.report import RunReport

Base = declarative_base()

DEFAULT_DB_PATH = os.path.join(os.path.expanduser("~"), ".batchrun", "runs.db")


class RunNotFoundError(BatchRunError, KeyError):
    pass


class RunModel(Base):
    __tablename__ = "runs"

    id = Column(String, primary_key=True)
    started_at = Column(DateTime, nullable=False)
    ended_at = Column(DateTime, nullable=False)
    recorded_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    submitted = Column(Integer, default=0)
    succeeded = Column(Integer, default=0)
    failed = Column(Integer, default=0)
    timed_out = Column(Integer, default=0)
    cancelled = Column(Integer, default=0)
    exit_code = Column(Integer, nullable=False)
    report_json = Column(Text, nullable=False)


class JobResultModel(Base):
    __tablename__ = "job_results"

    run_id = Column(String, ForeignKey("runs.id"), primary_key=True)
    position = Column(Integer, primary_key=True)
    job_id = Column(String, nullable=False)
    command = Column(String, nullable=False)
    final_state = Column(SQLEnum(JobState), nullable=False)
    attempts = Column(Integer, default=0)
    last_exit_code = Column(Integer, nullable=True)
    last_error = Column(String, nullable=True)


class RunStore:
    """History of finished runs. The engine never writes here on its own."""

    def __init__(self, db_path: str = None):
        if not db_path:
            db_path = DEFAULT_DB_PATH
            os.makedirs(os.path.dirname(db_path), exist_ok=True)

        self.engine = create_engine(f"sqlite:///{db_path}")
        Base.metadata.create_all(self.engine)
        self.Session = sessionmaker(bind=self.engine)

    def close(self):
        self.engine.dispose()

    def __del__(self):
        if hasattr(self, 'engine'):
            self.engine.dispose()

    def save_report(self, report: RunReport) -> str:
        run_id = uuid4().hex[:12]
        session = self.Session()
        try:
            session.add(RunModel(
                id=run_id,
                started_at=report.started_at,
                ended_at=report.ended_at,
                submitted=report.summary.submitted,
                succeeded=report.summary.succeeded,
                failed=report.summary.failed,
                timed_out=report.summary.timed_out,
                cancelled=report.summary.cancelled,
                exit_code=report.exit_code,
                report_json=report.model_dump_json(),
            ))
            for position, result in enumerate(report.jobs):
                last = result.last_attempt
                session.add(JobResultModel(
                    run_id=run_id,
                    position=position,
                    job_id=result.job_id,
                    command=" ".join(result.command),
                    final_state=result.final_state,
                    attempts=result.attempt_count,
                    last_exit_code=last.exit_code if last else None,
                    last_error=last.error if last else None,
                ))
            session.commit()
            return run_id
        finally:
            session.close()

    def get_report(self, run_id: str) -> RunReport:
        session = self.Session()
        try:
            run = session.query(RunModel).filter(RunModel.id == run_id).first()
            if run is None:
                raise RunNotFoundError(run_id)
            return RunReport.model_validate_json(run.report_json)
        finally:
            session.close()

    def list_runs(self, limit: int = None):
        session = self.Session()
        try:
            query = session.query(RunModel).order_by(RunModel.recorded_at.desc())
            if limit:
                query = query.limit(limit)
            return query.all()
        finally:
            session.close()

    def list_job_results(self, run_id: str, state: JobState = None):
        session = self.Session()
        try:
            query = session.query(JobResultModel).filter(JobResultModel.run_id == run_id)
            if state:
                query = query.filter(JobResultModel.final_state == state)
            return query.order_by(JobResultModel.position.asc()).all()
        finally:
            session.close()
