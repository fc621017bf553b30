from datetime import datetime
from decimal import Decimal
from enum import Enum as StrEnumBase

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from giftflow.core.clock import utcnow
from giftflow.db.session import Base


DEFAULT_ACKNOWLEDGEMENT_MESSAGE = "Большое спасибо {name} за участие в событии {event}!"


def _link_table(name: str, left: str, left_fk: str, right: str, right_fk: str) -> Table:
    return Table(
        name,
        Base.metadata,
        Column(left, ForeignKey(left_fk, ondelete="CASCADE"), primary_key=True),
        Column(right, ForeignKey(right_fk, ondelete="CASCADE"), primary_key=True),
    )


user_friends = _link_table("user_friends", "user_id", "users.id", "friend_id", "users.id")
user_blocked = _link_table("user_blocked", "user_id", "users.id", "blocked_id", "users.id")
user_viewers = _link_table("user_viewers", "user_id", "users.id", "viewer_id", "users.id")
user_gift_viewers = _link_table("user_gift_viewers", "user_id", "users.id", "viewer_id", "users.id")
gift_viewers = _link_table("gift_viewers", "gift_id", "gifts.id", "user_id", "users.id")
event_members = _link_table("event_members", "event_id", "events.id", "user_id", "users.id")
event_viewers = _link_table("event_viewers", "event_id", "events.id", "user_id", "users.id")
event_gifts = _link_table("event_gifts", "event_id", "events.id", "gift_id", "gifts.id")


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    telegram_id: Mapped[int] = mapped_column(BigInteger, unique=True, index=True, nullable=False)
    username: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    language: Mapped[str | None] = mapped_column(String(8), nullable=True)
    is_premium: Mapped[bool] = mapped_column(Boolean, default=False)
    photo_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="RUB")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    friends: Mapped[list["User"]] = relationship(
        secondary=user_friends,
        primaryjoin=lambda: User.id == user_friends.c.user_id,
        secondaryjoin=lambda: User.id == user_friends.c.friend_id,
    )
    blocked: Mapped[list["User"]] = relationship(
        secondary=user_blocked,
        primaryjoin=lambda: User.id == user_blocked.c.user_id,
        secondaryjoin=lambda: User.id == user_blocked.c.blocked_id,
    )
    viewers: Mapped[list["User"]] = relationship(
        secondary=user_viewers,
        primaryjoin=lambda: User.id == user_viewers.c.user_id,
        secondaryjoin=lambda: User.id == user_viewers.c.viewer_id,
    )
    gift_viewers: Mapped[list["User"]] = relationship(
        secondary=user_gift_viewers,
        primaryjoin=lambda: User.id == user_gift_viewers.c.user_id,
        secondaryjoin=lambda: User.id == user_gift_viewers.c.viewer_id,
    )

    @property
    def display_name(self) -> str:
        return self.first_name or self.username or str(self.telegram_id)


class Gift(Base):
    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Owner and reserver are telegram ids, not user row ids
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    link: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str] = mapped_column(String(8), default="RUB")
    is_reserved: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reserved_by: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    is_given: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_thanked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    donation_id: Mapped[int | None] = mapped_column(
        ForeignKey("donations.id", ondelete="SET NULL"),
        unique=True,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    donation: Mapped["Donation | None"] = relationship(back_populates="gift")
    viewers: Mapped[list[User]] = relationship(secondary=gift_viewers)
    events: Mapped[list["Event"]] = relationship(secondary=event_gifts, back_populates="gifts")

    __table_args__ = (
        CheckConstraint("is_reserved = (reserved_by IS NOT NULL)", name="ck_gifts_reserved_by_iff_reserved"),
        CheckConstraint("NOT is_thanked OR is_given", name="ck_gifts_thanked_after_given"),
    )


class Donation(Base):
    __tablename__ = "donations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    author_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    # Set once, by the contribution that crosses the gift price
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    author: Mapped[User] = relationship()
    gift: Mapped[Gift | None] = relationship(back_populates="donation", uselist=False)
    donors: Mapped[list["Donor"]] = relationship(
        back_populates="donation",
        cascade="all, delete-orphan",
    )


class Donor(Base):
    __tablename__ = "donors"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    donation_id: Mapped[int] = mapped_column(ForeignKey("donations.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    donation: Mapped[Donation] = relationship(back_populates="donors")
    user: Mapped[User] = relationship()

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_donors_amount_non_negative"),
    )


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(String(2000), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    send_invitations: Mapped[bool] = mapped_column(Boolean, default=False)
    send_acknowledgements: Mapped[bool] = mapped_column(Boolean, default=False)
    acknowledgement_message: Mapped[str] = mapped_column(
        String(1000), default=DEFAULT_ACKNOWLEDGEMENT_MESSAGE
    )
    # One-shot guards, written only by the lifecycle sweep
    start_notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    completion_notification_sent: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    gifters_revealed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_swept_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    members: Mapped[list[User]] = relationship(secondary=event_members)
    viewers: Mapped[list[User]] = relationship(secondary=event_viewers)
    gifts: Mapped[list[Gift]] = relationship(secondary=event_gifts, back_populates="events")


class FriendRequestStatus(str, StrEnumBase):
    PENDING = "pending"
    ACCEPTED = "accepted"


class FriendRequest(Base):
    __tablename__ = "friend_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    requester_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(16), default=FriendRequestStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    requester: Mapped[User] = relationship(foreign_keys=[requester_id])
    recipient: Mapped[User] = relationship(foreign_keys=[recipient_id])


class NotificationType(str, StrEnumBase):
    FRIEND_REQUEST = "FRIEND_REQUEST"
    FRIEND_REQUEST_ACCEPTED = "FRIEND_REQUEST_ACCEPTED"
    FRIEND_REQUEST_DECLINED = "FRIEND_REQUEST_DECLINED"

    EVENT_INVITATION = "EVENT_INVITATION"
    EVENT_PARTICIPANT_JOINED = "EVENT_PARTICIPANT_JOINED"
    EVENT_PARTICIPANT_LEFT = "EVENT_PARTICIPANT_LEFT"
    EVENT_STARTING_SOON = "EVENT_STARTING_SOON"
    EVENT_THANK_YOU = "EVENT_THANK_YOU"
    EVENT_COMPLETED = "EVENT_COMPLETED"
    EVENT_GIFTERS_REVEALED = "EVENT_GIFTERS_REVEALED"

    GIFT_RESERVED = "GIFT_RESERVED"
    GIFT_GIVEN = "GIFT_GIVEN"
    GIFT_THANK_YOU_NOTE = "GIFT_THANK_YOU_NOTE"
    GIFT_FUNDRAISING_OPENED = "GIFT_FUNDRAISING_OPENED"
    GIFT_FUNDRAISING_CLOSED = "GIFT_FUNDRAISING_CLOSED"


class EntityModel(str, StrEnumBase):
    USER = "User"
    EVENT = "Event"
    GIFT = "Gift"
    FRIEND_REQUEST = "FriendRequest"


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    sender_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_localized: Mapped[dict[str, str] | None] = mapped_column(JSON, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Polymorphic reference, resolved at read time through ENTITY_MODELS
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_model: Mapped[str] = mapped_column(String(20), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    recipient: Mapped[User] = relationship(foreign_keys=[recipient_id])
    sender: Mapped[User | None] = relationship(foreign_keys=[sender_id])


ENTITY_MODELS: dict[EntityModel, type[Base]] = {
    EntityModel.USER: User,
    EntityModel.EVENT: Event,
    EntityModel.GIFT: Gift,
    EntityModel.FRIEND_REQUEST: FriendRequest,
}
