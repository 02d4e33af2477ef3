from pydantic import BaseModel, ConfigDict, Field, model_validator

SHORT_COMMIT_LENGTH = 7


class Repository(BaseModel):
    name: str
    url: str


class PullRequestRepository(BaseModel):
    name: str
    html_url: str


class HeadCommit(BaseModel):
    id: str


class PushEvent(BaseModel):
    repository: Repository
    head_commit: HeadCommit


class PullRequestHead(BaseModel):
    sha: str


class PullRequest(BaseModel):
    head: PullRequestHead


class PullRequestEvent(BaseModel):
    repository: PullRequestRepository
    pull_request: PullRequest


class BuildInformation(BaseModel):
    """Everything needed to build one commit of a repository."""

    model_config = ConfigDict(frozen=True)

    repo_url: str
    short_commit_id: str
    commit_id: str = Field(min_length=SHORT_COMMIT_LENGTH)
    repo_name: str
    timestamp: str

    @model_validator(mode="after")
    def _check_short_commit_id(self):
        if self.short_commit_id != self.commit_id[:SHORT_COMMIT_LENGTH]:
            raise ValueError(
                f"short_commit_id must be the first {SHORT_COMMIT_LENGTH} "
                "characters of commit_id"
            )
        return self

    @classmethod
    def for_commit(
        cls, repo_url: str, commit_id: str, repo_name: str, timestamp: str
    ) -> "BuildInformation":
        return cls(
            repo_url=repo_url,
            short_commit_id=commit_id[:SHORT_COMMIT_LENGTH],
            commit_id=commit_id,
            repo_name=repo_name,
            timestamp=timestamp,
        )
