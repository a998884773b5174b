from quecomemos import db
from quecomemos.models import Food, Group, GroupMember, Meal, MealFood, Profile


def seed_demo_data():
    """Three members in one group and a couple of meals to vote on."""
    profiles = [Profile(username=u) for u in ('ana', 'bruno', 'carla')]
    db.session.add_all(profiles)
    db.session.flush()

    group = Group(name='Casa', description='Demo group', created_by=profiles[0].id)
    db.session.add(group)
    db.session.flush()
    for i, p in enumerate(profiles):
        db.session.add(GroupMember(group_id=group.id, profile_id=p.id, role='admin' if i == 0 else 'member'))

    rice = Food(name='Rice', kcal=130.0)
    chicken = Food(name='Chicken', kcal=165.0)
    beans = Food(name='Black beans', kcal=132.0)
    db.session.add_all([rice, chicken, beans])
    db.session.flush()

    meals = [
        ('Arroz con pollo', [(rice, 2.0), (chicken, 1.5)]),
        ('Gallo pinto', [(rice, 1.5), (beans, 1.0)]),
    ]
    for name, foods in meals:
        meal = Meal(name=name, profile_id=profiles[0].id)
        db.session.add(meal)
        db.session.flush()
        for food, quantity in foods:
            db.session.add(MealFood(meal_id=meal.id, food_id=food.id, quantity=quantity))

    db.session.commit()
    return group
