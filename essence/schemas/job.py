from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, List, Literal
from datetime import datetime


class TrainingParameters(BaseModel):
    trigger_word: str = Field(min_length=1)
    input_images_url: str | None = None
    captioning: Literal['captioning-disabled', 'automatic', 'captioning-enabled'] = 'automatic'
    training_steps: int = Field(default=300, ge=1, le=1000)
    mode: Literal['style'] = 'style'
    lora_rank: Literal[16, 32] = 16
    finetune_type: Literal['lora', 'full'] = 'lora'

    description: str | None = None
    preview_image_url: str | None = None
    original_dataset_filename: str | None = None

    @model_validator(mode='after')
    def _strip_trigger_word(self):
        self.trigger_word = self.trigger_word.strip()
        if not self.trigger_word:
            raise ValueError('trigger_word must not be blank')
        return self


class GenerationParameters(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_job_id: str = Field(min_length=1)
    prompt: str = Field(min_length=1)
    aspect_ratio: str = '1:1'
    output_format: Literal['jpg', 'png', 'webp'] = 'jpg'
    safety_tolerance: int = Field(default=2, ge=1, le=6)
    finetune_strength: float = Field(default=1.0, ge=0, le=2)
    image_prompt_strength: float = Field(default=0.1, ge=0, le=1)
    raw: bool = False
    seed: int | None = None
    image_prompt: str | None = None


class TrainingAssetIn(BaseModel):
    original_filename: str = Field(min_length=1)
    storage_ref: str = Field(min_length=1)
    content_type: str | None = None
    file_size: int | None = None
    # set when the asset is already registered as a parent IP asset
    registered_asset_id: str | None = None


class TrainingJobCreateRequest(BaseModel):
    parameters: Dict[str, Any]
    assets: List[TrainingAssetIn] = []
    parent_references: List[str] = []


class GenerationJobCreateRequest(BaseModel):
    parameters: Dict[str, Any]
    parent_references: List[str] = []


class JobCreatedResponse(BaseModel):
    id: str
    status: str


class DerivativeRegistrationOut(BaseModel):
    asset_id: str | None
    registration_status: str
    failure_reason: str | None
    tx_ref: str | None
    failed_at: datetime | None = None


class TrainingAssetOut(BaseModel):
    id: str
    job_id: str
    original_filename: str
    storage_ref: str
    display_order: int
    external_registration: DerivativeRegistrationOut

    @classmethod
    def from_asset(cls, asset) -> 'TrainingAssetOut':
        return cls(
            id=asset.id,
            job_id=asset.job_id,
            original_filename=asset.original_filename,
            storage_ref=asset.storage_ref,
            display_order=asset.display_order,
            external_registration=DerivativeRegistrationOut(
                asset_id=asset.registration_asset_id,
                registration_status=asset.registration_status,
                failure_reason=asset.registration_failure_reason,
                tx_ref=asset.registration_tx_ref,
            ),
        )


class JobResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    id: str
    kind: str
    status: str
    external_job_id: str | None
    input_parameters: Dict[str, Any]
    model_job_id: str | None
    output_artifact_ref: str | None
    error_message: str | None
    logs: str | None
    parent_references: List[str]
    derivative_registration: DerivativeRegistrationOut
    is_hidden: bool
    predict_time: float | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None
    finalized_at: datetime | None = None

    is_terminal: bool = False
    still_waiting: bool = False

    @classmethod
    def from_job(cls, job, **extra) -> 'JobResponse':
        return cls(
            id=job.id,
            kind=job.kind,
            status=job.status,
            external_job_id=job.external_job_id,
            input_parameters=job.input_parameters or {},
            model_job_id=job.model_job_id,
            output_artifact_ref=job.output_artifact_ref,
            error_message=job.error_message,
            logs=job.logs,
            parent_references=list(job.parent_references or []),
            derivative_registration=DerivativeRegistrationOut(
                asset_id=job.registration_asset_id,
                registration_status=job.registration_status,
                failure_reason=job.registration_failure_reason,
                tx_ref=job.registration_tx_ref,
                failed_at=job.registration_failed_at,
            ),
            is_hidden=job.is_hidden,
            predict_time=job.predict_time,
            created_at=job.created_at,
            updated_at=job.updated_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            finalized_at=job.finalized_at,
            **extra,
        )


class AssetRegistrationUpdate(BaseModel):
    registration_status: Literal['pending', 'registered', 'failed']
    asset_id: str | None = None
    tx_ref: str | None = None
    failure_reason: str | None = None

    @model_validator(mode='after')
    def _registered_needs_asset_id(self):
        if self.registration_status == 'registered' and not self.asset_id:
            raise ValueError('asset_id is required when registration_status is "registered"')
        return self
