from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name='Sequence',
            fields=[
                ('counter_id', models.CharField(max_length=40, primary_key=True, serialize=False)),
                ('value', models.PositiveBigIntegerField(default=0)),
                ('prefix', models.CharField(blank=True, max_length=20)),
                ('updated_at', models.DateTimeField(auto_now=True)),
            ],
            options={
                'ordering': ['counter_id'],
                'constraints': [models.CheckConstraint(condition=models.Q(('value__gte', 0)), name='sequence_value_non_negative')],
            },
        ),
    ]
