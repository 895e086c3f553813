from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List

class ConversationCreate(BaseModel):
    assessmentId: str
    screenerType: Optional[str] = None
    concerns: Optional[List[str]] = None
    preferences: Optional[Dict[str, Any]] = None

class MessageIn(BaseModel):
    content: str = ""

class SafetyResponseIn(BaseModel):
    response: str

class MessageOut(BaseModel):
    id: str
    sender: str
    content: str
    riskLevel: str
    sequenceNumber: int
    createdAt: str

class ConversationOut(BaseModel):
    id: str
    assessmentId: str
    screenerType: str
    status: str
    currentQuestionId: Optional[str] = None
    questionsCompleted: int
    totalQuestions: int
    completionPercentage: float
    createdAt: str
    updatedAt: str

class ConversationDetail(ConversationOut):
    messages: List[MessageOut] = []

class ConversationCreated(BaseModel):
    conversation: ConversationOut
    initialMessage: MessageOut

class ReplyMessageOut(BaseModel):
    id: str
    content: str
    sender: str = "ai"
    riskLevel: str

class ProgressOut(BaseModel):
    questionsCompleted: int
    totalQuestions: int
    isComplete: bool

class ChatReply(BaseModel):
    message: ReplyMessageOut
    conversation: ProgressOut
    showSafetyPivot: bool = False
    crisisResources: Optional[List[Dict[str, str]]] = None
    pivot: Optional[Dict[str, Any]] = None

class SafetyResponseOut(BaseModel):
    success: bool
    action: Optional[str] = None
    message: Optional[str] = None
    conversationStatus: str
    error: Optional[str] = None
    resources: Optional[List[Dict[str, str]]] = None

class CrisisEventOut(BaseModel):
    id: str
    conversationId: str
    messageId: Optional[str] = None
    userId: str
    riskLevel: str
    triggerContent: str
    matchedKeywords: List[str]
    detectionMethod: str
    safetyPivotShown: bool
    userResponse: Optional[str] = None
    context: Dict[str, Any] = {}
    resolvedAt: Optional[str] = None
    resolvedBy: Optional[str] = None
    resolutionNotes: Optional[str] = None
    reviewed: bool
    reviewedAt: Optional[str] = None
    reviewedBy: Optional[str] = None
    createdAt: str

class CrisisEventsPage(BaseModel):
    page: int
    limit: int
    total: int
    items: List[CrisisEventOut]

class ResolveIn(BaseModel):
    notes: str = Field(default="", max_length=4000)
