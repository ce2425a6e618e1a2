"""SQL used to resolve who gets notified about an update.

Admins of the collective and of its parent are always part of the audience;
callers only choose which extra member roles to add and whether the admins of
hosted collectives are included.

Parameters shared by the two user queries:
  $1 collective id, $2 target member roles, $3 include hosted accounts,
  $4 include regular members.
"""

_AUDIENCE_MEMBER_COLLECTIVES_CTE = """
    with update_collective as (
      select id, parent_collective_id
      from collectives
      where id = $1
    ),
    audience as (
      select m.member_collective_id
      from members m
      where $4::boolean
        and m.collective_id = $1
        and m.role = any($2::text[])
        and m.deleted_at is null
      union
      select m.member_collective_id
      from members m
      join update_collective uc on m.collective_id in (uc.id, uc.parent_collective_id)
      where m.role = 'ADMIN'
        and m.deleted_at is null
      union
      select m.member_collective_id
      from members m
      join collectives hosted on hosted.id = m.collective_id
      where $3::boolean
        and hosted.host_collective_id = $1
        and hosted.id <> $1
        and hosted.approved_at is not null
        and hosted.deleted_at is null
        and m.role = 'ADMIN'
        and m.deleted_at is null
    )
"""

USERS_TO_NOTIFY_SQL = (
    _AUDIENCE_MEMBER_COLLECTIVES_CTE
    + """
    select distinct
      u.id::text as id,
      u.email,
      u.collective_id
    from users u
    join audience a on a.member_collective_id = u.collective_id
    where u.deleted_at is null
    order by u.collective_id
    """
)

COUNT_USERS_TO_NOTIFY_SQL = (
    _AUDIENCE_MEMBER_COLLECTIVES_CTE
    + """
    select count(distinct u.id)::int as count
    from users u
    join audience a on a.member_collective_id = u.collective_id
    where u.deleted_at is null
    """
)

# $1 collective id, $2 target member roles.
COUNT_MEMBERS_TO_NOTIFY_SQL = """
    select
      mc.type::text as type,
      count(distinct mc.id)::int as count
    from members m
    join collectives mc on mc.id = m.member_collective_id
    where m.collective_id = $1
      and m.role = any($2::text[])
      and m.deleted_at is null
      and mc.deleted_at is null
    group by mc.type
    """
